"""Queue scheduler -- admission, dispatch and retry policy for queued builds.

Flow for one queue item::

    waiting ──tick──▶ processing ──trigger ok──▶ completed
                          │
                          └──trigger failed──▶ waiting (retry) | failed

``tick()`` runs on a fixed delay from the app lifespan.  It only does
the database work synchronously (claiming the item, numbering, creating
the build rows); the CI trigger call runs as a tracked background task
whose success/failure handlers finish the dispatch.
"""

import asyncio
import logging
from uuid import UUID

from app.clients import ci_client
from app.config import settings
from app.errors import BadRequestError, ExternalCallError, NotFoundError, StateConflictError
from app.repos import build_repo, project_repo, queue_repo
from app.services import build_state, params_builder
from app.services.background import build_locks, spawn

logger = logging.getLogger(__name__)

QUEUE_STATUSES = frozenset({"waiting", "processing", "completed", "failed", "cancelled"})

_tick_lock = asyncio.Lock()
_enabled_override: bool | None = None


# ---------------------------------------------------------------------------
# scheduler toggle
# ---------------------------------------------------------------------------


def is_scheduler_enabled() -> bool:
    """Current scheduler state: the runtime toggle if set, else config."""
    if _enabled_override is not None:
        return _enabled_override
    return settings.SCHEDULER_ENABLED


def set_scheduler_enabled(enabled: bool) -> bool:
    """Flip the scheduler on or off at runtime.

    Read by both the queue tick and the status poll tick.
    """
    global _enabled_override
    _enabled_override = enabled
    logger.info("Scheduler %s", "enabled" if enabled else "disabled")
    return enabled


def reset_scheduler_toggle() -> None:
    """Drop the runtime override so config applies again."""
    global _enabled_override
    _enabled_override = None


# ---------------------------------------------------------------------------
# queue operations
# ---------------------------------------------------------------------------


async def enqueue(
    project_id: UUID,
    layer_id: UUID,
    *,
    requester_id: UUID | None = None,
    req_method: str | None = None,
    priority: int | None = None,
    scm_override: dict | None = None,
    build_override: dict | None = None,
) -> dict:
    """Add a ``waiting`` build request for *layer_id* of *project_id*.

    Raises :class:`NotFoundError` for an unknown project, layer (or a
    layer of another project) or requester; nothing is written then.
    """
    project = await project_repo.get_project(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    layer = await project_repo.get_layer(layer_id)
    if layer is None or layer["project_id"] != project_id:
        raise NotFoundError(f"Layer {layer_id} not found in project {project_id}")
    if requester_id is not None and await project_repo.get_user(requester_id) is None:
        raise NotFoundError(f"User {requester_id} not found")

    item = await queue_repo.create_queue_item(
        project_id,
        layer_id,
        requester_id=requester_id,
        req_method=req_method or "manual",
        priority=priority if priority is not None else 0,
        scm_override=scm_override,
        build_override=build_override,
        max_retries=settings.QUEUE_MAX_RETRIES,
    )
    logger.info(
        "Queued build for project %s layer %s (queue_id=%s, priority=%d)",
        project["project_name"], layer["name"], item["id"], item["priority"],
    )
    return item


async def _require_waiting(queue_id: UUID, action: str) -> None:
    """Raise the right error after a conditional update touched nothing."""
    item = await queue_repo.get_queue_item(queue_id)
    if item is None:
        raise NotFoundError(f"Queue item {queue_id} not found")
    raise StateConflictError(
        f"Cannot {action} queue item in status '{item['status']}'",
        current_state=item["status"],
    )


async def cancel(queue_id: UUID) -> dict:
    """Cancel a ``waiting`` item.  Any other status is a conflict."""
    item = await queue_repo.cancel_queue_item(queue_id)
    if item is None:
        await _require_waiting(queue_id, "cancel")
    logger.info("Cancelled queue item %s", queue_id)
    return item


async def update_priority(queue_id: UUID, priority: int) -> dict:
    """Re-prioritise a ``waiting`` item."""
    item = await queue_repo.update_priority(queue_id, priority)
    if item is None:
        await _require_waiting(queue_id, "change priority of")
    logger.info("Queue item %s priority -> %d", queue_id, priority)
    return item


async def get_queue_item(queue_id: UUID) -> dict:
    item = await queue_repo.get_queue_item(queue_id)
    if item is None:
        raise NotFoundError(f"Queue item {queue_id} not found")
    return item


async def list_queue(status: str | None = None) -> list[dict]:
    if status is not None and status not in QUEUE_STATUSES:
        raise BadRequestError(f"Unknown queue status '{status}'")
    return await queue_repo.list_queue_items(status)


async def get_queue_status() -> dict:
    """Counts plus the knobs that govern admission."""
    return {
        "waiting": await queue_repo.count_by_status("waiting"),
        "processing": await queue_repo.count_by_status("processing"),
        "max_concurrent": settings.MAX_CONCURRENT_BUILDS,
        "scheduler_enabled": is_scheduler_enabled(),
    }


# ---------------------------------------------------------------------------
# admission
# ---------------------------------------------------------------------------


async def tick() -> int:
    """Admit waiting items up to the concurrency cap.

    Returns the number of items dispatched in this tick.  A failure on
    one item is recorded against that item and the loop moves on.
    """
    if not is_scheduler_enabled():
        return 0

    async with _tick_lock:
        processing = await queue_repo.count_by_status("processing")
        max_concurrent = settings.MAX_CONCURRENT_BUILDS
        if processing >= max_concurrent:
            logger.debug("Queue tick skipped: %d/%d processing", processing, max_concurrent)
            return 0

        items = await queue_repo.get_waiting_items(max_concurrent - processing)
        dispatched = 0
        for item in items:
            try:
                if await dispatch(item):
                    dispatched += 1
            except Exception:
                logger.exception("Unexpected error dispatching queue item %s", item["id"])
        if dispatched:
            logger.info("Queue tick dispatched %d item(s)", dispatched)
        return dispatched


async def dispatch(item: dict) -> bool:
    """Claim *item*, create its build rows and fire the CI trigger.

    Returns ``False`` if the item could not be claimed (no longer
    ``waiting``) or preparation failed before the CI backend was called.
    """
    claimed = await queue_repo.mark_processing(item["id"])
    if claimed is None:
        logger.debug("Queue item %s no longer waiting, skipped", item["id"])
        return False

    logger.info(
        "Dispatching queue item %s (attempt %d/%d)",
        claimed["id"], claimed["retry_count"] + 1, claimed["max_retries"],
    )
    try:
        project = await project_repo.get_project(claimed["project_id"])
        layer = await project_repo.get_layer(claimed["layer_id"])
        if project is None or layer is None:
            raise NotFoundError("Project or layer of queue item no longer exists")
        if not project.get("plan_id"):
            raise BadRequestError(f"Project {project['id']} has no CI plan configured")
        requester = None
        if claimed.get("requester_id"):
            requester = await project_repo.get_user(claimed["requester_id"])

        params = params_builder.generate_params(
            project, layer, requester,
            claimed.get("scm_override"), claimed.get("build_override"),
        )
        snapshot = params_builder.create_build_snapshot(
            project, layer,
            claimed.get("scm_override"), claimed.get("build_override"),
        )
        created = await build_repo.create_build_with_stages(
            claimed,
            plan_key=project["plan_id"],
            request_params=params,
            snapshot=snapshot,
            stages=build_state.initial_stages(layer),
            trigger_type=claimed["req_method"],
            triggered_by=claimed.get("requester_id"),
        )
    except Exception as exc:
        logger.error("Preparing queue item %s failed: %s", claimed["id"], exc)
        await _apply_retry_policy(claimed, str(exc))
        return False

    build = created["build"]
    logger.info(
        "Created build %s (round %d, #%d) for queue item %s",
        build["id"], build["round"], build["build_number"], claimed["id"],
    )
    spawn(
        _trigger(claimed, created, project["plan_id"], params),
        name=f"trigger:{build['id']}",
    )
    return True


async def _trigger(item: dict, created: dict, plan_key: str, params: dict) -> None:
    """Background continuation: call the CI backend and record the outcome.

    A crash while recording the outcome must not leave the item holding a
    ``processing`` slot, so it falls back to the retry policy.
    """
    build = created["build"]
    result: ci_client.CITriggerResult | None = None
    try:
        result = await ci_client.trigger_build(
            plan_key, params_builder.stringify_variables(params),
        )
    except Exception as exc:
        logger.error("Trigger failed for build %s: %s", build["id"], exc)
        error = str(exc)
    try:
        if result is None:
            await _on_trigger_failure(item, created, error)
        else:
            await _on_trigger_success(item, created, result)
    except Exception as exc:
        logger.exception("Recording the trigger outcome of build %s failed", build["id"])
        await _abandon_dispatch(item, created, result, str(exc))


async def _abandon_dispatch(
    item: dict,
    created: dict,
    result: ci_client.CITriggerResult | None,
    error: str,
) -> None:
    build = created["build"]
    if result is not None:
        # The CI job is running but can no longer be tracked; a retry starts a fresh one.
        await _stop_untracked_job(build["id"], result.build_result_key)
    try:
        async with build_locks.hold(build["id"]):
            await build_repo.mark_request_error(created["request"]["id"], error)
            await _fail_dispatched_build(build["id"], error)
        await _apply_retry_policy(item, error)
    except Exception:
        logger.exception(
            "Queue item %s stays processing until the next start-up recovery", item["id"],
        )


async def _stop_untracked_job(build_id: UUID, external_key: str) -> None:
    try:
        await ci_client.stop_build(external_key)
    except ExternalCallError as exc:
        logger.error("Could not stop CI job %s of build %s: %s", external_key, build_id, exc)
        return
    logger.info("Stopped CI job %s of build %s", external_key, build_id)


async def _on_trigger_success(item: dict, created: dict, result: ci_client.CITriggerResult) -> None:
    build = created["build"]
    key_columns = {
        "external_key": result.build_result_key,
        "external_number": result.build_number,
    }
    async with build_locks.hold(build["id"]):
        await build_repo.mark_request_accepted(
            created["request"]["id"], result.build_result_key, result.build_number,
        )
        changes = dict(key_columns)
        changes.update(build_state.plan_build_start(build) or {})
        updated = await build_repo.update_build(build["id"], changes, only_if_active=True)
        if updated is None:
            # Status stays terminal, but the key is kept so the job is traceable.
            finished = await build_repo.update_build(build["id"], key_columns)
            if finished is not None and finished["status"] == "cancelled":
                logger.warning(
                    "Build %s was cancelled while its trigger was in flight, stopping %s",
                    build["id"], result.build_result_key,
                )
                spawn(
                    _stop_untracked_job(build["id"], result.build_result_key),
                    name=f"cancel:{build['id']}",
                )
            else:
                logger.warning(
                    "Build %s was finished before the CI backend accepted it (%s)",
                    build["id"], result.build_result_key,
                )
        else:
            stages = await build_repo.get_stages(build["id"])
            first = build_state.first_enabled_stage(stages)
            if first is not None:
                await build_repo.update_stage(
                    first["id"], build_state.plan_stage_transition(first, "running"),
                )
        await queue_repo.mark_completed(item["id"], build["id"])
    logger.info(
        "Build %s accepted by CI backend as %s", build["id"], result.build_result_key,
    )


async def _fail_dispatched_build(build_id: UUID, error: str) -> None:
    """Fail a build whose dispatch went nowhere, with its unfinished stages."""
    # Unstarted stages fail with the build so no pending stage hangs off
    # a finished build.
    for stage in build_state.unfinished_stages(await build_repo.get_stages(build_id)):
        await build_repo.update_stage(
            stage["id"],
            build_state.plan_stage_transition(stage, "failed", result={"dispatch_error": error}),
        )
    build = await build_repo.get_build(build_id)
    completion = build_state.plan_build_completion(build, "failed") if build else None
    if completion:
        await build_repo.update_build(build_id, completion, only_if_active=True)


async def _on_trigger_failure(item: dict, created: dict, error: str) -> None:
    build = created["build"]
    async with build_locks.hold(build["id"]):
        await build_repo.mark_request_error(created["request"]["id"], error)
        await _fail_dispatched_build(build["id"], error)
    await _apply_retry_policy(item, error)


async def _apply_retry_policy(item: dict, error: str) -> None:
    updated = await queue_repo.record_dispatch_failure(item["id"], error)
    if updated is None:
        return
    if updated["status"] == "failed":
        logger.warning(
            "Queue item %s failed permanently after %d attempt(s): %s",
            updated["id"], updated["retry_count"], error,
        )
    else:
        logger.info(
            "Queue item %s will be retried (%d/%d)",
            updated["id"], updated["retry_count"], updated["max_retries"],
        )


# ---------------------------------------------------------------------------
# start-up recovery
# ---------------------------------------------------------------------------

_INTERRUPTED = "Dispatch interrupted before its outcome was recorded"


async def recover_interrupted_dispatches() -> int:
    """Settle ``processing`` items left behind by a stopped or crashed process.

    Run once at start-up, before the first tick, when no trigger of this
    process can be in flight.  An item whose latest request was accepted
    by the CI backend is completed (and its build gets the result key if
    it missed it); any other item is failed through the retry policy.
    Returns the number of items settled.
    """
    settled = 0
    for item in await queue_repo.list_queue_items("processing"):
        request = await build_repo.get_latest_request_for_queue_item(item["id"])
        if request is not None and request["build_id"] is not None:
            async with build_locks.hold(request["build_id"]):
                if request["request_status"] == "accepted":
                    await _adopt_accepted_build(request)
                else:
                    await build_repo.mark_request_error(request["id"], _INTERRUPTED)
                    await _fail_dispatched_build(request["build_id"], _INTERRUPTED)
        if request is not None and request["request_status"] == "accepted":
            await queue_repo.mark_completed(item["id"], request["build_id"])
            logger.info("Queue item %s completed from its accepted request", item["id"])
        else:
            await _apply_retry_policy(item, _INTERRUPTED)
        settled += 1
    if settled:
        logger.warning("Recovered %d interrupted dispatch(es)", settled)
    return settled


async def _adopt_accepted_build(request: dict) -> None:
    build = await build_repo.get_build(request["build_id"])
    if build is None or build.get("external_key"):
        return
    changes = {
        "external_key": request["external_key"],
        "external_number": request["external_number"],
    }
    changes.update(build_state.plan_build_start(build) or {})
    await build_repo.update_build(build["id"], changes)
