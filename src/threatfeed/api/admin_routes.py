# API - Admin control surface
#
# GET  /api/threats/admin/{status|sources|patterns}
# POST /api/threats/admin  {action: initialize | run_aging | fetch_external
#                           | generate_analytics | emergency_alert
#                           | update_source}
# plus pattern and source management endpoints.

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from ..feed.errors import ValidationError
from ..feed.service import ThreatFeedService, get_feed_service
from .envelope import created, ok
from .security import get_caller_id, verify_session_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/threats/admin", tags=["threats-admin"])

ACTIONS = (
    "initialize",
    "run_aging",
    "fetch_external",
    "generate_analytics",
    "emergency_alert",
    "update_source",
)


class AdminActionRequest(BaseModel):
    action: str
    source_id: Optional[str] = None
    updates: Optional[Dict[str, Any]] = None
    days: int = 30
    title: Optional[str] = None
    message: Optional[str] = None
    severity: Optional[str] = None
    target_type: Optional[str] = None
    target_value: Optional[str] = None


class PatternActiveRequest(BaseModel):
    is_active: bool


# ── Read surface ─────────────────────────────────────────────────────


@router.get("/status")
def admin_status(service: ThreatFeedService = Depends(get_feed_service)):
    return ok(service.admin_status())


@router.get("/sources")
def admin_sources(service: ThreatFeedService = Depends(get_feed_service)):
    return ok({"sources": [s.to_dict() for s in service.adapters.list_sources()]})


@router.get("/patterns")
def admin_patterns(
    active_only: bool = Query(False),
    service: ThreatFeedService = Depends(get_feed_service),
):
    return ok({"patterns": [p.to_dict() for p in service.patterns.list_patterns(active_only)]})


# ── Actions ──────────────────────────────────────────────────────────


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise ValidationError(f"{name} is required", {"field": name})
    return value


@router.post("")
def admin_action(
    req: AdminActionRequest,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """Dispatch one admin action."""
    logger.info("Admin action %s by %s", req.action, caller or "-")
    if req.action == "initialize":
        return ok(service.initialize(actor=caller))
    if req.action == "run_aging":
        return ok(service.run_aging_job())
    if req.action == "fetch_external":
        report = service.fetch_external(_require(req.source_id, "source_id"), actor=caller)
        return ok(report.to_dict())
    if req.action == "generate_analytics":
        if req.days <= 0:
            raise ValidationError("days must be positive", {"field": "days"})
        return ok({"analytics": service.stats.analytics(req.days), "period": f"{req.days} days"})
    if req.action == "emergency_alert":
        return ok(
            service.emergency_alert(
                title=req.title or "",
                message=req.message or "",
                severity=req.severity or "",
                target_type=req.target_type,
                target_value=req.target_value,
                actor=caller,
            )
        )
    if req.action == "update_source":
        if not req.updates:
            raise ValidationError("updates are required", {"field": "updates"})
        config = service.adapters.update_source(
            _require(req.source_id, "source_id"), req.updates, actor=caller
        )
        return ok(config.to_dict())
    raise ValidationError(
        f"Invalid action. Available actions: {', '.join(ACTIONS)}", {"action": req.action}
    )


@router.post("/sources/{source_id}/reactivate")
def reactivate_source(
    source_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.adapters.reactivate(source_id, actor=caller).to_dict())


@router.post("/patterns")
def create_pattern(
    data: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return created(service.patterns.create_pattern(data, actor=caller).to_dict())


@router.put("/patterns/{pattern_id}")
def update_pattern(
    pattern_id: str,
    changes: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """In-place edit; rejected with 409 once the pattern has fired."""
    return ok(service.patterns.update_pattern(pattern_id, changes, actor=caller).to_dict())


@router.post("/patterns/{pattern_id}/revisions")
def revise_pattern(
    pattern_id: str,
    changes: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return created(service.patterns.revise_pattern(pattern_id, changes, actor=caller).to_dict())


@router.post("/patterns/{pattern_id}/active")
def set_pattern_active(
    pattern_id: str,
    req: PatternActiveRequest,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.patterns.set_active(pattern_id, req.is_active, actor=caller).to_dict())
