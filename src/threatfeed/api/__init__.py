# Threat Feed - Web API
#
# FastAPI backend exposing the feed under /api/threats with a uniform
# {success, data | error} envelope.

from .main import app, start_api_server
from .security import (
    get_caller_id,
    initialize_session_token,
    require_caller_id,
    verify_session_token,
)

__all__ = [
    "app",
    "start_api_server",
    "get_caller_id",
    "initialize_session_token",
    "require_caller_id",
    "verify_session_token",
]
