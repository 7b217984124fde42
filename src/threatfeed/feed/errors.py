"""
Threat Feed Exception Classes

Each exception carries the HTTP status and machine code used by the API
envelope.  Adapter and delivery errors are isolated per unit of work and
never propagate into ingestion callers.
"""

from typing import Any, Dict, Optional


class ThreatFeedError(Exception):
    """Base exception for threat feed operations"""

    http_status = 500
    code = "feed_error"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class ValidationError(ThreatFeedError):
    """Raised when observation or record fields are malformed"""

    http_status = 400
    code = "validation_error"


class NotFoundError(ThreatFeedError):
    """Raised when a referenced record, pattern, subscription or watchlist does not exist"""

    http_status = 404
    code = "not_found"


class ConflictError(ThreatFeedError):
    """Raised on an optimistic-concurrency version mismatch"""

    http_status = 409
    code = "conflict"


class AdapterError(ThreatFeedError):
    """Raised when a source adapter fetch fails or times out"""

    http_status = 502
    code = "adapter_error"

    def __init__(self, source_id: str, message: str = "", timed_out: bool = False):
        super().__init__(message, {"source_id": source_id, "timed_out": timed_out})
        self.source_id = source_id
        self.timed_out = timed_out


class DeliveryError(ThreatFeedError):
    """Raised when a subscription delivery attempt fails"""

    http_status = 502
    code = "delivery_error"


class InternalError(ThreatFeedError):
    """Raised on an unexpected failure"""

    http_status = 500
    code = "internal_error"

    def __init__(self, message: str = "", mutation_id: Optional[str] = None):
        super().__init__(message, {"mutation_id": mutation_id} if mutation_id else None)
        self.mutation_id = mutation_id
