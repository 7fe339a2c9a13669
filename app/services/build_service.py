"""Build service -- explicit build and stage operations.

Everything here takes the same per-build lock as the reconciler and
applies the same no-regression rules; these are the operator-facing
counterparts of the automatic poll / webhook path.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from app.clients import ci_client
from app.errors import BadRequestError, ExternalCallError, NotFoundError, StateConflictError
from app.repos import build_repo, project_repo
from app.services import build_state
from app.services.background import build_locks, spawn
from app.services.stage_mapping import map_stage_name
from app.services.status_reconciler import apply_stage_update, finalize_build

logger = logging.getLogger(__name__)


async def _require_build(build_id: UUID) -> dict:
    build = await build_repo.get_build(build_id)
    if build is None:
        raise NotFoundError(f"Build {build_id} not found")
    return build


# ---------------------------------------------------------------------------
# reads
# ---------------------------------------------------------------------------


async def get_build(build_id: UUID) -> dict:
    """Return a build with its stages (in stage order) under ``stages``."""
    build = await _require_build(build_id)
    build["stages"] = await build_repo.get_stages(build_id)
    return build


async def list_active_builds() -> list[dict]:
    return await build_repo.get_active_builds()


async def find_timed_out_requests(older_than: timedelta) -> list[dict]:
    """Dispatch requests still ``sent`` after *older_than*.  Listing only."""
    cutoff = datetime.now(timezone.utc) - older_than
    return await build_repo.get_timed_out_requests(cutoff)


# ---------------------------------------------------------------------------
# status changes
# ---------------------------------------------------------------------------


async def update_build_status(build_id: UUID, status: str) -> dict:
    """Set a build's status explicitly.

    ``running`` records ``started_at``; terminal statuses record
    ``finished_at`` and the duration.  Terminal builds cannot change.
    """
    if status not in build_state.BUILD_STATUSES:
        raise BadRequestError(f"Unknown build status '{status}'")
    async with build_locks.hold(build_id):
        build = await _require_build(build_id)
        if build["status"] == status:
            return build
        if build["status"] in build_state.BUILD_TERMINAL or status == "pending":
            raise StateConflictError(
                f"Cannot move build from '{build['status']}' to '{status}'",
                current_state=build["status"],
            )
        if status == "running":
            changes = build_state.plan_build_start(build)
        else:
            changes = build_state.plan_build_completion(build, status)
        updated = await build_repo.update_build(build_id, changes or {}, only_if_active=True)
    logger.info("Build %s status set to %s", build_id, status)
    return updated or await _require_build(build_id)


async def update_stage_status(build_id: UUID, stage_label: str, status: str) -> dict:
    """Set one stage's status explicitly, then finalize the build if done."""
    if status not in build_state.STAGE_STATUSES or status == "skipped":
        raise BadRequestError(f"Invalid stage status '{status}'")
    stage_name = map_stage_name(stage_label)
    if stage_name is None:
        raise NotFoundError(f"Unknown stage '{stage_label}'")

    async with build_locks.hold(build_id):
        build = await _require_build(build_id)
        stages = await build_repo.get_stages(build_id)
        stage = next((s for s in stages if s["stage_name"] == stage_name), None)
        if stage is None:
            raise NotFoundError(f"Stage {stage_name} not found on build {build_id}")
        if stage["status"] == status:
            return stage
        if stage["status"] in build_state.STAGE_TERMINAL or (
            stage["status"] == "running" and status == "pending"
        ):
            raise StateConflictError(
                f"Cannot move stage {stage_name} from '{stage['status']}' to '{status}'",
                current_state=stage["status"],
            )
        updated = await apply_stage_update(build_id, stage, status, result={"manual": True})
        stages = [updated if updated and s["id"] == updated["id"] else s for s in stages]
        if build["status"] not in build_state.BUILD_TERMINAL and build_state.all_stages_terminal(stages):
            await finalize_build(build, stages)
    return updated or stage


async def update_release_status(build_id: UUID, release_status: str) -> dict:
    """Change the release status of a build on a release layer."""
    if release_status not in build_state.RELEASE_STATUSES:
        raise BadRequestError(f"Unknown release status '{release_status}'")
    async with build_locks.hold(build_id):
        build = await _require_build(build_id)
        layer = await project_repo.get_layer(build["layer_id"])
        if not layer or layer.get("type") != "release":
            raise BadRequestError("Release status only applies to release layers")
        updated = await build_repo.update_build(build_id, {"release_status": release_status})
    logger.info("Build %s release status -> %s", build_id, release_status)
    return updated


# ---------------------------------------------------------------------------
# cancellation
# ---------------------------------------------------------------------------


async def cancel_build(build_id: UUID) -> dict:
    """Cancel an active build.

    A build the CI backend knows about is stopped there first (in the
    background) and marked ``cancelled`` once the stop is acknowledged.
    A build without a CI key is marked ``cancelled`` straight away.
    """
    async with build_locks.hold(build_id):
        build = await _require_build(build_id)
        if build["status"] in build_state.BUILD_TERMINAL:
            raise StateConflictError(
                f"Cannot cancel build in status '{build['status']}'",
                current_state=build["status"],
            )
        if build.get("external_key"):
            spawn(_stop_and_mark(build_id, build["external_key"]), name=f"cancel:{build_id}")
            return {"build_id": build_id, "status": "cancelling"}
        await build_repo.update_build(
            build_id, build_state.plan_build_completion(build, "cancelled"), only_if_active=True,
        )
    logger.info("Build %s cancelled before reaching the CI backend", build_id)
    return {"build_id": build_id, "status": "cancelled"}


async def _stop_and_mark(build_id: UUID, external_key: str) -> None:
    try:
        await ci_client.stop_build(external_key)
    except ExternalCallError as exc:
        logger.error("Failed to stop build %s (%s): %s", build_id, external_key, exc)
        return
    async with build_locks.hold(build_id):
        build = await build_repo.get_build(build_id)
        changes = build_state.plan_build_completion(build, "cancelled") if build else None
        if changes is None:
            logger.info("Build %s finished before the stop took effect", build_id)
            return
        await build_repo.update_build(build_id, changes, only_if_active=True)
    logger.info("Build %s cancelled", build_id)
