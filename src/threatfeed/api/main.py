# Threat Feed - FastAPI Backend
#
# REST API for the threat feed.  Every response uses the envelope from
# ``envelope.py``; ThreatFeedError subclasses map to their HTTP status,
# anything else becomes a logged 500 InternalError.

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..core.config import get_settings
from ..feed.errors import InternalError, ThreatFeedError
from ..feed.models import new_id
from ..feed.service import get_feed_service
from .admin_routes import router as admin_router
from .envelope import error_response, ok
from .security import initialize_session_token
from .stats_routes import router as stats_router
from .subscription_routes import router as subscription_router
from .threat_routes import router as threat_router

logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Threatfeed API",
    description="Crypto threat-intelligence feed",
    version=__version__,
)

# Collection routers first: "/api/threats/{record_id}" must not shadow them
app.include_router(admin_router)
app.include_router(stats_router)
app.include_router(subscription_router)
app.include_router(threat_router)


# ── Error mapping ────────────────────────────────────────────────────


@app.exception_handler(ThreatFeedError)
async def feed_error_handler(request: Request, exc: ThreatFeedError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.http_status, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(
        400,
        "validation_error",
        "Invalid request",
        {"errors": [{"loc": e["loc"], "msg": e["msg"], "type": e["type"]} for e in exc.errors()]},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    error = InternalError("Internal server error", mutation_id=new_id())
    logger.error(
        "Unhandled error on %s %s (id %s)",
        request.method,
        request.url.path,
        error.mutation_id,
        exc_info=exc,
    )
    return error_response(error.http_status, error.code, error.message, error.details)


# ── Lifecycle ────────────────────────────────────────────────────────


@app.on_event("startup")
async def startup_event():
    """Create the session token and the feed service; start schedulers if enabled."""
    initialize_session_token()
    service = get_feed_service()
    service.initialize(actor="system")
    if get_settings().start_schedulers:
        service.start()
    logger.info("Threatfeed API started (v%s)", __version__)


@app.on_event("shutdown")
async def shutdown_event():
    get_feed_service().shutdown()


@app.get("/api/health")
async def health():
    return ok({"status": "ok", "version": __version__})


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_api_server()
