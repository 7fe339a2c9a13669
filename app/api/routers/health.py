"""Liveness and version endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import VERSION, settings
from app.repos.db import get_pool
from app.services.queue_scheduler import is_scheduler_enabled

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _database_reachable() -> bool:
    try:
        pool = await get_pool()
        await pool.fetchval("SELECT 1")
    except Exception as exc:
        logger.warning("Health probe could not reach the database: %s", exc)
        return False
    return True


@router.get("/health")
async def health_check():
    """200 with scheduler state when the database answers, else 503."""
    db_ok = await _database_reachable()
    body = {
        "status": "ok" if db_ok else "degraded",
        "db": "connected" if db_ok else "unreachable",
        "scheduler_enabled": is_scheduler_enabled(),
        "max_concurrent_builds": settings.MAX_CONCURRENT_BUILDS,
    }
    return JSONResponse(body, status_code=200 if db_ok else 503)


@router.get("/health/version")
async def health_version() -> dict:
    return {"version": VERSION}
