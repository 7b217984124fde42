# API - Response envelope
#
# Every route answers {"success": true, "data": ...} or
# {"success": false, "error": {"code", "message"[, "details"]}}.

from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from ..feed.models import encode


def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": encode(data)}


def created(data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=201, content=ok(data))


def error_response(
    status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    body: Dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = encode(details)
    return JSONResponse(status_code=status_code, content={"success": False, "error": body})
