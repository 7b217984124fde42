# API - Statistics routes

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..feed.models import StatsPeriod, parse_enum
from ..feed.service import ThreatFeedService, get_feed_service
from .envelope import ok
from .security import verify_session_token

router = APIRouter(prefix="/api/threats/stats", tags=["threats-stats"])


class GenerateStatsRequest(BaseModel):
    period: str = StatsPeriod.DAILY.value


@router.get("")
def get_stats(
    period: str = Query(StatsPeriod.DAILY.value),
    service: ThreatFeedService = Depends(get_feed_service),
):
    """Newest rollup for ``period`` (null if none was generated yet)."""
    rollup = service.stats.latest(parse_enum(StatsPeriod, period, "period"))
    return ok(rollup.to_dict() if rollup else None)


@router.post("")
def generate_stats(
    req: GenerateStatsRequest,
    service: ThreatFeedService = Depends(get_feed_service),
    _token: str = Depends(verify_session_token),
):
    return ok(service.generate_stats(parse_enum(StatsPeriod, req.period, "period")))


@router.get("/analytics")
def get_analytics(
    days: int = Query(30, ge=1, le=365),
    service: ThreatFeedService = Depends(get_feed_service),
):
    return ok(service.stats.analytics(days))
