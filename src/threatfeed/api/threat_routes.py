# API - Threat record routes
#
# Ingestion, queries, moderation, votes and correlation edges under
# /api/threats.  Collection-level routers (admin, stats, subscriptions)
# are included before this one so "/{record_id}" never shadows them.

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ..feed.errors import ValidationError
from ..feed.service import ThreatFeedService, get_feed_service
from .envelope import created, ok
from .security import get_caller_id, verify_session_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/threats", tags=["threats"])


class VoteRequest(BaseModel):
    vote: str = Field(..., description="'up' or 'down'")


class ResolveRequest(BaseModel):
    reason: str = ""


# ── Records ──────────────────────────────────────────────────────────


@router.post("")
def create_threat(
    observation: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """Submit one observation; duplicates merge into the open record."""
    result = service.ingest(observation, actor=caller)
    payload = result.to_dict()
    return created(payload) if result.is_new else ok(payload)


@router.get("")
def list_threats(
    type: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    target: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    min_confidence: Optional[int] = Query(None, ge=0, le=100),
    limit: int = Query(50),
    offset: int = Query(0),
    service: ThreatFeedService = Depends(get_feed_service),
):
    records, total = service.list_records(
        threat_type=type,
        severity=severity,
        status=status,
        source=source,
        target=target,
        tag=tag,
        min_confidence=min_confidence,
        limit=limit,
        offset=offset,
    )
    return ok(
        {
            "threats": [r.to_dict() for r in records],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@router.get("/{record_id}")
def get_threat(record_id: str, service: ThreatFeedService = Depends(get_feed_service)):
    return ok(service.get_record(record_id).to_dict())


@router.put("/{record_id}")
def update_threat(
    record_id: str,
    changes: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """Moderator update; ``expected_version`` must match the stored version."""
    changes = dict(changes)
    expected_version = changes.pop("expected_version", None)
    if expected_version is not None and (
        isinstance(expected_version, bool) or not isinstance(expected_version, int)
    ):
        raise ValidationError("expected_version must be an integer", {"field": "expected_version"})
    record = service.update_record(record_id, changes, expected_version, actor=caller)
    return ok(record.to_dict())


@router.delete("/{record_id}")
def resolve_threat(
    record_id: str,
    req: Optional[ResolveRequest] = None,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """Records are never deleted; DELETE resolves them."""
    record = service.resolve(record_id, reason=req.reason if req else "", actor=caller)
    return ok(record.to_dict())


@router.post("/{record_id}/vote")
def vote_threat(
    record_id: str,
    req: VoteRequest,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    record = service.vote(record_id, req.vote, actor=caller)
    return ok(
        {
            "id": record.id,
            "votes": record.votes,
            "confidence": record.confidence,
            "version": record.version,
        }
    )


@router.post("/{record_id}/reverify")
def reverify_threat(
    record_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.reverify(record_id, actor=caller).to_dict())


# ── Correlations ─────────────────────────────────────────────────────


@router.get("/{record_id}/correlations")
def list_correlations(record_id: str, service: ThreatFeedService = Depends(get_feed_service)):
    return ok({"record_id": record_id, "correlations": service.correlations_for(record_id)})


@router.post("/correlations/{edge_id}/dispute")
def dispute_correlation(
    edge_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.correlation.dispute(edge_id, actor=caller).to_dict())


@router.post("/correlations/{edge_id}/confirm")
def confirm_correlation(
    edge_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.correlation.confirm(edge_id, actor=caller).to_dict())
