# Feed Module - Record Mutation Events
#
# In-process fan-out of ``RecordMutated`` events from the store-mutating
# engines (ingestion, correlation, aging, moderation) to consumers such
# as the subscription engine.  A failing subscriber is logged and never
# affects the publisher or other subscribers.

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import MutationKind, RecordStatus, ThreatRecord, encode, new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RecordMutated:
    """A committed change to one record."""

    kind: MutationKind
    record: ThreatRecord
    previous_status: Optional[RecordStatus] = None
    urgent: bool = False
    actor: str = "system"
    event_id: str = field(default_factory=new_id)
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def is_transition(self) -> bool:
        """True when this event moved the record to a different status."""
        return (
            self.previous_status is not None
            and self.previous_status != self.record.status
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "record_id": self.record.id,
            "status": self.record.status.value,
            "previous_status": encode(self.previous_status),
            "urgent": self.urgent,
            "actor": self.actor,
            "occurred_at": self.occurred_at.isoformat(),
        }


Subscriber = Callable[[RecordMutated], Any]


class EventBus:
    """Thread-safe synchronous publish/subscribe for mutation events."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._published = 0
        self._subscriber_errors = 0

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def publish(self, event: RecordMutated) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            self._published += 1
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                with self._lock:
                    self._subscriber_errors += 1
                logger.exception(
                    "Mutation subscriber failed (event=%s record=%s)",
                    event.event_id,
                    event.record.id,
                )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "subscribers": len(self._subscribers),
                "published": self._published,
                "subscriber_errors": self._subscriber_errors,
            }
