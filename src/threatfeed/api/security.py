# API Security - Session token and caller identity
#
# Authentication is owned by an external service.  This module only
# checks the per-instance session token on mutating routes and reads
# the caller's identity from the X-User-Id header set upstream.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

# Issued at startup; None until then
_SESSION_TOKEN: Optional[str] = None


def initialize_session_token() -> str:
    """Issue a fresh token for this process and return it."""
    global _SESSION_TOKEN
    _SESSION_TOKEN = secrets.token_urlsafe(32)
    return _SESSION_TOKEN


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def verify_session_token(x_session_token: Optional[str] = Header(None)) -> str:
    """
    Dependency for routes that change feed state.

    The API answers 503 until startup has issued a token, and 401 when
    the X-Session-Token header is absent or does not match.
    """
    if _SESSION_TOKEN is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feed API is still starting",
        )
    if not x_session_token:
        raise _unauthorized("Missing X-Session-Token header")
    if not secrets.compare_digest(x_session_token, _SESSION_TOKEN):
        raise _unauthorized("Invalid session token")
    return x_session_token


async def get_caller_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity as forwarded by the auth layer (may be absent)."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


async def require_caller_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Like ``get_caller_id`` but rejects anonymous callers with 401."""
    caller = await get_caller_id(x_user_id)
    if caller is None:
        raise _unauthorized("Missing X-User-Id header")
    return caller
