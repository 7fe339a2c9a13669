"""Build queue router -- enqueue, inspect and manage queued build requests."""

from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from app.services import queue_scheduler

router = APIRouter(prefix="/api/build-queue", tags=["build-queue"])


class EnqueueRequest(BaseModel):
    """Request body for queueing a build of one layer."""
    project_id: UUID
    layer_id: UUID
    requester_id: UUID | None = None
    req_method: str | None = Field(default=None, max_length=50)  # "manual" when omitted
    priority: int | None = None
    scm_override: dict | None = None
    build_override: dict | None = None


class PriorityRequest(BaseModel):
    priority: int


class SchedulerToggleRequest(BaseModel):
    enabled: bool


# ── POST /api/build-queue ─────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED)
async def enqueue_build(body: EnqueueRequest) -> dict:
    """Queue a build; it is dispatched by a later scheduler tick."""
    item = await queue_scheduler.enqueue(
        body.project_id,
        body.layer_id,
        requester_id=body.requester_id,
        req_method=body.req_method,
        priority=body.priority,
        scm_override=body.scm_override,
        build_override=body.build_override,
    )
    return {"queue_id": item["id"], "status": item["status"]}


# ── GET /api/build-queue ──────────────────────────────────────────────────


@router.get("")
async def list_queue(status_filter: str | None = Query(default=None, alias="status")) -> dict:
    """List queue items in dispatch order."""
    return {"items": await queue_scheduler.list_queue(status_filter)}


@router.get("/status")
async def queue_status() -> dict:
    """Waiting/processing counts, concurrency cap and scheduler state."""
    return await queue_scheduler.get_queue_status()


# ── PUT /api/build-queue/scheduler ────────────────────────────────────────


@router.put("/scheduler")
async def toggle_scheduler(body: SchedulerToggleRequest) -> dict:
    """Enable or pause both the queue tick and the status poller."""
    return {"scheduler_enabled": queue_scheduler.set_scheduler_enabled(body.enabled)}


# ── /api/build-queue/{queue_id} ───────────────────────────────────────────


@router.get("/{queue_id}")
async def get_queue_item(queue_id: UUID) -> dict:
    return await queue_scheduler.get_queue_item(queue_id)


@router.post("/{queue_id}/cancel")
async def cancel_queue_item(queue_id: UUID) -> dict:
    """Cancel a waiting item (409 in any other status)."""
    item = await queue_scheduler.cancel(queue_id)
    return {"ok": True, "queue_id": item["id"], "status": item["status"]}


@router.post("/{queue_id}/priority")
async def change_priority(queue_id: UUID, body: PriorityRequest) -> dict:
    """Change the priority of a waiting item (409 in any other status)."""
    item = await queue_scheduler.update_priority(queue_id, body.priority)
    return {"queue_id": item["id"], "priority": item["priority"]}
