"""Status reconciler -- merge CI-backend progress into build and stage rows.

Two producers feed the same state:

* the **poller** (``poll_tick``), which fetches the CI status of every
  acknowledged active build, and
* the **webhook receiver** (``handle_stage_webhook``), which pushes
  single-stage results in arbitrary order, possibly more than once.

Both go through :func:`apply_stage_update` while holding the build's
entry in :data:`~app.services.background.build_locks`, so a poll and a
webhook for the same build never interleave.  Updates are idempotent and
never move a stage or build out of a terminal status.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from app.clients import ci_client
from app.clients.ci_client import CIBuildStatus
from app.errors import ExternalCallError, UnmappableStageNameError
from app.repos import build_repo, project_repo
from app.services import build_state, release_criteria
from app.services.background import build_locks, spawn
from app.services.queue_scheduler import is_scheduler_enabled
from app.services.stage_mapping import (
    STAGE_BUILD,
    STAGE_COVERITY,
    STAGE_SAM,
    map_lifecycle_state,
    map_stage_name,
    require_stage_name,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# stage result payloads
# ---------------------------------------------------------------------------


def stage_result_payload(stage_name: str, status: str, reported: dict | None = None) -> dict:
    """Result payload stored on a completed stage.

    The CI status endpoint carries no analysis figures, so each stage gets
    its default shape; values present in *reported* (a webhook payload)
    replace the defaults.
    """
    if stage_name == STAGE_BUILD:
        result: dict = {"compile_success": status == "success"}
    elif stage_name == STAGE_SAM:
        result = {"score": 0, "issues": []}
    elif stage_name == STAGE_COVERITY:
        result = {"defect_count": 0, "critical": 0, "high": 0, "medium": 0}
    else:
        result = {}
    if reported:
        result.update({k: reported[k] for k in result if k in reported})
    return result


def _as_int(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# shared update path (caller holds the build lock)
# ---------------------------------------------------------------------------


async def apply_stage_update(build_id: UUID, stage: dict | None, new_status: str, **kwargs) -> dict | None:
    """Apply one stage status report.  Returns the updated row or ``None``."""
    if stage is None:
        return None
    changes = build_state.plan_stage_transition(stage, new_status, **kwargs)
    if changes is None:
        if stage["status"] != new_status:
            logger.debug(
                "Ignoring %s -> %s for stage %s of build %s",
                stage["status"], new_status, stage["stage_name"], build_id,
            )
        return None
    updated = await build_repo.update_stage(stage["id"], changes)
    if updated is not None:
        logger.debug(
            "Stage %s of build %s: %s -> %s",
            stage["stage_name"], build_id, stage["status"], updated["status"],
        )
    return updated


async def finalize_build(build: dict, stages: list[dict], status: CIBuildStatus | None = None) -> dict | None:
    """Close a build whose stages are all terminal.

    Sets the build status, quality metrics, CI artifacts and, for release
    layers, the release status and release criteria.  A build that is
    already terminal is left alone (returns ``None``).
    """
    build_status = build_state.compute_build_status(stages)
    changes = build_state.plan_build_completion(build, build_status)
    if changes is None:
        return None

    metrics = {
        **(build.get("quality_metrics") or {}),
        **release_criteria.build_quality_metrics(status, stages),
    }
    changes["quality_metrics"] = metrics
    if status is not None and status.artifacts:
        changes["artifacts"] = {"artifacts": status.artifacts}

    layer = await project_repo.get_layer(build["layer_id"])
    release_status = build_state.compute_release_status(layer, build_status, stages)
    if release_status is not None:
        changes["release_status"] = release_status
        changes["release_criteria"] = release_criteria.compute_release_criteria(metrics, stages)

    updated = await build_repo.update_build(build["id"], changes, only_if_active=True)
    if updated is not None:
        logger.info(
            "Build %s finished: %s%s",
            build["id"], build_status,
            f" (release: {release_status})" if release_status else "",
        )
    return updated


def _by_order(stages) -> list[dict]:
    return sorted(stages, key=lambda s: s["stage_order"])


# ---------------------------------------------------------------------------
# poller
# ---------------------------------------------------------------------------


async def poll_tick() -> int:
    """Schedule a status poll for every active build with a CI key."""
    if not is_scheduler_enabled():
        return 0
    builds = await build_repo.get_active_builds(with_external_key=True)
    if builds:
        logger.debug("Polling %d active build(s)", len(builds))
    for build in builds:
        spawn(poll_build(build["id"], build["external_key"]), name=f"poll:{build['id']}")
    return len(builds)


async def poll_build(build_id: UUID, external_key: str) -> None:
    """Fetch the CI status of one build and reconcile it."""
    try:
        status = await ci_client.get_build_status(external_key)
    except ExternalCallError as exc:
        logger.error("Failed to poll build %s (%s): %s", build_id, external_key, exc)
        return
    try:
        await apply_build_status(build_id, status)
    except Exception:
        logger.exception("Error processing CI status for build %s", build_id)


async def apply_build_status(build_id: UUID, status: CIBuildStatus) -> dict | None:
    """Reconcile a polled CI status into the build's stages.

    When the CI backend reports the job finished, stages it never reported
    are completed from the overall outcome and tagged ``auto_completed``.
    """
    async with build_locks.hold(build_id):
        build = await build_repo.get_build(build_id)
        if build is None or build["status"] in build_state.BUILD_TERMINAL:
            return build

        stages = {s["stage_name"]: s for s in await build_repo.get_stages(build_id)}
        for ci_stage in status.stages:
            name = map_stage_name(ci_stage.name)
            if name is None:
                logger.warning(
                    "Ignoring unmappable stage name %r on build %s", ci_stage.name, build_id,
                )
                continue
            new_status = map_lifecycle_state(ci_stage.state)
            result = None
            if new_status in build_state.STAGE_COMPLETED:
                result = stage_result_payload(name, new_status)
            updated = await apply_stage_update(build_id, stages.get(name), new_status, result=result)
            if updated is not None:
                stages[name] = updated

        if status.is_finished:
            outcome = "success" if status.is_successful else "failed"
            for stage in build_state.unfinished_stages(list(stages.values())):
                updated = await apply_stage_update(
                    build_id, stage, outcome, result={"auto_completed": True},
                )
                if updated is not None:
                    stages[stage["stage_name"]] = updated

        ordered = _by_order(stages.values())
        if build_state.all_stages_terminal(ordered):
            return await finalize_build(build, ordered, status) or build
        return build


# ---------------------------------------------------------------------------
# webhooks
# ---------------------------------------------------------------------------


async def handle_stage_webhook(external_key: str, stage_label: str | None, payload: dict) -> str:
    """Apply a pushed stage result.

    Returns ``"processed"`` or ``"ignored"``; unknown builds and
    unmappable stage names are logged and dropped.
    """
    build = await build_repo.get_build_by_external_key(external_key)
    if build is None:
        logger.warning("Webhook for unknown build %s dropped", external_key)
        return "ignored"
    try:
        stage_name = require_stage_name(stage_label)
    except UnmappableStageNameError as exc:
        logger.warning("Webhook for build %s ignored: %s", external_key, exc)
        return "ignored"

    new_status = map_lifecycle_state(payload.get("status") or payload.get("state"))
    async with build_locks.hold(build["id"]):
        build = await build_repo.get_build(build["id"])
        if build is None or build["status"] in build_state.BUILD_TERMINAL:
            logger.debug("Webhook for finished build %s ignored", external_key)
            return "ignored"

        stages = await build_repo.get_stages(build["id"])
        stage = next((s for s in stages if s["stage_name"] == stage_name), None)
        result = None
        if new_status in build_state.STAGE_COMPLETED:
            reported = payload.get("result") if isinstance(payload.get("result"), dict) else payload
            result = stage_result_payload(stage_name, new_status, reported)
        updated = await apply_stage_update(
            build["id"], stage, new_status,
            result=result,
            error_count=_as_int(payload.get("errorCount")),
            warning_count=_as_int(payload.get("warningCount")),
            log_url=payload.get("logUrl"),
            external_response={
                **payload,
                "received_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        if updated is None:
            return "ignored"

        stages = [updated if s["id"] == updated["id"] else s for s in stages]
        if build_state.all_stages_terminal(stages):
            await finalize_build(build, _by_order(stages))
    return "processed"


async def handle_build_notification(
    external_key: str,
    life_cycle_state: str | None = None,
    build_state_label: str | None = None,
) -> str:
    """Handle a build-level notification.

    The notification carries no stage detail, so a ``Finished`` notice for
    a known build only schedules an immediate poll of that build.
    """
    build = await build_repo.get_build_by_external_key(external_key)
    if build is None:
        logger.warning("Build notification for unknown build %s dropped", external_key)
        return "ignored"
    logger.info(
        "Build notification for %s: lifecycle=%s state=%s",
        external_key, life_cycle_state, build_state_label,
    )
    if (life_cycle_state or "").lower() == "finished" and build["status"] not in build_state.BUILD_TERMINAL:
        spawn(poll_build(build["id"], external_key), name=f"poll:{build['id']}")
        return "processed"
    return "ignored"
