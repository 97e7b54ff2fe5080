"""
FastAPI exception handler for SubstreamError.

Looks the error code up in the registry and renders the structured JSON
body the storefront expects. Codes missing from the registry fall back
to a generic 500 so internal detail never leaks.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import SubstreamError
from app.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_FALLBACK_BODY = {
    "title": "Internal error",
    "message": "An unexpected error occurred.",
    "retryable": False,
    "user_action_required": False,
    "remediation": [],
}


def _error_body(code: str, entry: ErrorEntry | None) -> dict:
    if entry is None:
        return {"error": {"code": code, **_FALLBACK_BODY}}
    return {
        "error": {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
        }
    }


async def substream_error_handler(request: Request, exc: SubstreamError) -> JSONResponse:
    """Convert SubstreamError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail, "http.path": request.url.path},
        )
        return JSONResponse(status_code=500, content=_error_body(exc.code, None))

    log_fn = _severity_to_log_fn(entry.severity)
    log_fn(
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.message": exc.detail,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )
    return JSONResponse(status_code=entry.http_status, content=_error_body(exc.code, entry))


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
