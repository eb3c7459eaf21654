"""
contest_engine/errors.py
Centralized API error handling.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "CODE",
    "message": "Human-readable description",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 200/201: Successful, valid request (idempotent retries included)
- 400: Invalid input / invalid contest definition
- 403: Admin endpoint without a valid admin token
- 404: Contest or participation does not exist
- 409: Contest full / ended / attempt already completed
- 410: Pinned leaderboard version no longer retained
- 422: Validation error (Pydantic)
- 429: Rate limit exceeded
- 500: NEVER caused by user input (internal only)
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from contest_engine.exceptions import ContestEngineError

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_CONTEST = "INVALID_CONTEST"
    INVALID_SUBMISSION = "INVALID_SUBMISSION"
    UNKNOWN_WINDOW = "UNKNOWN_WINDOW"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"

    CONTEST_NOT_FOUND = "CONTEST_NOT_FOUND"
    PARTICIPATION_NOT_FOUND = "PARTICIPATION_NOT_FOUND"

    CONTEST_FULL = "CONTEST_FULL"
    CONTEST_ENDED = "CONTEST_ENDED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    SNAPSHOT_EXPIRED = "SNAPSHOT_EXPIRED"
    SNAPSHOT_NOT_FOUND = "SNAPSHOT_NOT_FOUND"

    INTERNAL_ERROR = "INTERNAL_ERROR"


def _make_error_response(error: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create standardized error response body."""
    response = {
        "success": False,
        "error": error,
        "message": message,
    }
    if details:
        response["details"] = details
    return response


async def contest_engine_error_handler(request: Request, exc: ContestEngineError) -> JSONResponse:
    """Map domain exceptions onto their HTTP status and the uniform body."""
    if exc.status_code >= 500:
        logger.error(f"[API ERROR] {request.method} {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.info(f"[API REJECT] {request.method} {request.url.path}: {exc.code}")
    return JSONResponse(
        status_code=exc.status_code,
        content=_make_error_response(exc.code, exc.message, exc.details),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic validation errors keep the same envelope."""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "message": error.get("msg", "Invalid value"),
            "type": error.get("type", "value_error"),
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_make_error_response(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            {"errors": errors},
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[API ERROR] Unhandled exception on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_make_error_response(ErrorCode.INTERNAL_ERROR, "An internal error occurred"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ContestEngineError, contest_engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
