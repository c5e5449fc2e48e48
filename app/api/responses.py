"""Standard JSON envelopes for API success and error responses."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    TOKEN_ERROR = "TOKEN_ERROR"
    FORBIDDEN = "FORBIDDEN"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.TOKEN_ERROR: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.METHOD_NOT_ALLOWED: 405,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INTERNAL_ERROR: 500,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_body(code: ErrorCode, message: str, details: Any = None) -> dict:
    error = {"code": ErrorCode(code).value, "message": message, "timestamp": _timestamp()}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def error_response(
    code: ErrorCode,
    message: str,
    details: Any = None,
    status_code: Optional[int] = None,
) -> JSONResponse:
    """Error envelope. status_code overrides the default for the code (validator crashes use 500)."""
    return JSONResponse(
        status_code=status_code or ERROR_STATUS[ErrorCode(code)],
        content=jsonable_encoder(error_body(code, message, details)),
    )


def success_response(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, "data": data, "timestamp": _timestamp()}),
    )
