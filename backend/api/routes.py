"""REST API routes for the ZipLink relay."""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from config import ALLOWED_ORIGINS

logger = logging.getLogger(__name__)

router = APIRouter()

# Injected by main.py at startup
_registry = None
_started_at = time.monotonic()


def init_routes(registry) -> None:
    """Inject service dependencies into the routes module."""
    global _registry, _started_at
    _registry = registry
    _started_at = time.monotonic()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health():
    """Liveness probe: process status and uptime in seconds."""
    return {
        "status": "OK",
        "timestamp": _now_iso(),
        "uptime": time.monotonic() - _started_at,
        "sessions": len(_registry) if _registry is not None else 0,
    }


@router.get("/test")
async def reachability(request: Request):
    """Lets a client check that the relay is reachable from where it runs."""
    return {
        "message": "ZipLink backend is accessible!",
        "timestamp": _now_iso(),
        "clientIP": request.client.host if request.client else None,
        "allowedOrigins": ALLOWED_ORIGINS,
    }
