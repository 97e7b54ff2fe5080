"""
Health check endpoint.

- GET /health — cheap: process alive, version, uptime, sweeper state
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Cheap health check — no network calls."""
    sweeper = getattr(request.app.state, "sweeper", None)
    last = sweeper.last_report if sweeper else None
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sweeper": {
            "running": bool(sweeper and sweeper.running),
            "last_due": last.due if last else None,
            "last_failed": last.failed if last else None,
        },
    }
