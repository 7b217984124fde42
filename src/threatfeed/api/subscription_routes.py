# API - Subscriptions, watchlists and the in-app inbox
#
# Subscriptions may belong to a user (X-User-Id) or, for anonymous
# callers, to a session id given in the body.  Watchlists and the inbox
# always need a user.

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ..feed.errors import ValidationError
from ..feed.service import ThreatFeedService, get_feed_service
from .envelope import created, ok
from .security import get_caller_id, require_caller_id, verify_session_token

router = APIRouter(prefix="/api/threats", tags=["threats-subscriptions"])


class SubscriptionCreateRequest(BaseModel):
    filters: Dict[str, Any] = Field(default_factory=dict)
    delivery: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None


class WatchlistCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    targets: List[Any] = Field(..., min_length=1)
    alert_settings: Dict[str, Any] = Field(default_factory=dict)


class MarkReadRequest(BaseModel):
    ids: List[str]


# ── Subscriptions ────────────────────────────────────────────────────


@router.get("/subscriptions")
def list_subscriptions(
    active_only: bool = Query(False),
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
):
    subs = service.subscriptions.list_subscriptions(caller, active_only=active_only)
    return ok({"subscriptions": [s.to_dict() for s in subs]})


@router.post("/subscriptions")
def create_subscription(
    req: SubscriptionCreateRequest,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    if caller is None and not req.session_id:
        raise ValidationError("X-User-Id header or session_id is required")
    sub = service.subscriptions.create_subscription(
        req.model_dump(exclude={"session_id"}),
        user_id=caller,
        session_id=None if caller else req.session_id,
    )
    return created(sub.to_dict())


@router.get("/subscriptions/{subscription_id}")
def get_subscription(
    subscription_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
):
    return ok(service.subscriptions.get_subscription(subscription_id, caller).to_dict())


@router.put("/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: str,
    changes: Dict[str, Any] = Body(...),
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    sub = service.subscriptions.update_subscription(subscription_id, changes, caller)
    return ok(sub.to_dict())


@router.delete("/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: str,
    caller: Optional[str] = Depends(get_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    """Subscriptions are deactivated, never removed."""
    sub = service.subscriptions.deactivate_subscription(subscription_id, caller)
    return ok(sub.to_dict())


# ── Watchlists ───────────────────────────────────────────────────────


@router.get("/watchlists")
def list_watchlists(
    active_only: bool = Query(False),
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
):
    lists = service.subscriptions.list_watchlists(caller, active_only=active_only)
    return ok({"watchlists": [w.to_dict() for w in lists]})


@router.post("/watchlists")
def create_watchlist(
    req: WatchlistCreateRequest,
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    watchlist = service.subscriptions.create_watchlist(caller, req.model_dump())
    return created(watchlist.to_dict())


@router.get("/watchlists/{watchlist_id}")
def get_watchlist(
    watchlist_id: str,
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
):
    return ok(service.subscriptions.get_watchlist(watchlist_id, caller).to_dict())


@router.put("/watchlists/{watchlist_id}")
def update_watchlist(
    watchlist_id: str,
    changes: Dict[str, Any] = Body(...),
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    watchlist = service.subscriptions.update_watchlist(watchlist_id, changes, caller)
    return ok(watchlist.to_dict())


@router.delete("/watchlists/{watchlist_id}")
def delete_watchlist(
    watchlist_id: str,
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    watchlist = service.subscriptions.deactivate_watchlist(watchlist_id, caller)
    return ok(watchlist.to_dict())


# ── Inbox ────────────────────────────────────────────────────────────


@router.get("/inbox")
def get_inbox(
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = Query(False),
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
):
    items = service.subscriptions.inbox(caller, limit=limit, unread_only=unread_only)
    return ok({"items": items})


@router.post("/inbox/read")
def mark_inbox_read(
    req: MarkReadRequest,
    caller: str = Depends(require_caller_id),
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok({"updated": service.subscriptions.mark_read(caller, req.ids)})
