"""Builds router -- build inspection and explicit status operations."""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Query
from pydantic import BaseModel

from app.services import build_service

router = APIRouter(prefix="/api", tags=["builds"])


class StatusRequest(BaseModel):
    """Request body for an explicit build or stage status change."""
    status: str


class ReleaseStatusRequest(BaseModel):
    release_status: str  # "available" | "pending_approval" | "approved" | "rejected" | "released"


# ── GET /api/builds/active ────────────────────────────────────────────────


@router.get("/builds/active")
async def list_active_builds() -> dict:
    """Builds still pending or running, oldest first."""
    return {"items": await build_service.list_active_builds()}


# ── /api/builds/{build_id} ────────────────────────────────────────────────


@router.get("/builds/{build_id}")
async def get_build(build_id: UUID) -> dict:
    """A build with its three stages."""
    return await build_service.get_build(build_id)


@router.put("/builds/{build_id}/status")
async def update_build_status(build_id: UUID, body: StatusRequest) -> dict:
    return await build_service.update_build_status(build_id, body.status)


@router.put("/builds/{build_id}/stages/{stage_name}/status")
async def update_stage_status(build_id: UUID, stage_name: str, body: StatusRequest) -> dict:
    return await build_service.update_stage_status(build_id, stage_name, body.status)


@router.put("/builds/{build_id}/release-status")
async def update_release_status(build_id: UUID, body: ReleaseStatusRequest) -> dict:
    return await build_service.update_release_status(build_id, body.release_status)


@router.post("/builds/{build_id}/cancel")
async def cancel_build(build_id: UUID) -> dict:
    """Cancel an active build (stopped on the CI backend when it has a key)."""
    return await build_service.cancel_build(build_id)


# ── GET /api/build-requests/timed-out ─────────────────────────────────────


@router.get("/build-requests/timed-out")
async def timed_out_requests(older_than_minutes: int = Query(default=30, ge=1)) -> dict:
    """Dispatch requests still awaiting a CI response.  Nothing is changed."""
    items = await build_service.find_timed_out_requests(timedelta(minutes=older_than_minutes))
    return {"items": items}
