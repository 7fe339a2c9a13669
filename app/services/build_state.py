"""Build / stage lifecycle rules.

Pure functions over the plain dicts returned by the repositories.  They
decide *what* should change and return a dict of column updates (or
``None`` for "no change"); the caller persists the result while holding
the build's lock.

Stage lifecycle::

    pending ──▶ running ──▶ success | failed
       │
       ├──────────────────▶ success | failed   (completed without a start)
       └─▶ skipped                              (only at creation)

Nothing leaves ``success``, ``failed`` or ``skipped``.
"""

from datetime import datetime, timezone

from app.services.stage_mapping import STAGE_BUILD, STAGE_COVERITY, STAGE_SAM

STAGE_ORDER: dict[str, int] = {
    STAGE_BUILD: 1,
    STAGE_SAM: 2,
    STAGE_COVERITY: 3,
}

STAGE_STATUSES = frozenset({"pending", "running", "success", "failed", "skipped"})
STAGE_TERMINAL = frozenset({"success", "failed", "skipped"})
STAGE_COMPLETED = frozenset({"success", "failed"})

BUILD_STATUSES = frozenset({"pending", "running", "success", "failed", "cancelled"})
BUILD_TERMINAL = frozenset({"success", "failed", "cancelled"})
BUILD_ACTIVE = ("pending", "running")

RELEASE_STATUSES = frozenset(
    {"none", "available", "pending_approval", "approved", "rejected", "released"}
)

# Layer column holding each stage's enablement flag.
_STAGE_FLAG: dict[str, str] = {
    STAGE_BUILD: "build_enabled",
    STAGE_SAM: "sam_enabled",
    STAGE_COVERITY: "coverity_enabled",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_seconds(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(int((end - start).total_seconds()), 0)


# ---------------------------------------------------------------------------
# stages
# ---------------------------------------------------------------------------


def initial_stages(layer: dict) -> list[dict]:
    """Return the three stage rows a new build starts with.

    A stage is ``skipped`` when the layer disables it; a missing flag
    counts as enabled.
    """
    stages = []
    for name, order in STAGE_ORDER.items():
        enabled = layer.get(_STAGE_FLAG[name])
        stages.append({
            "stage_name": name,
            "stage_order": order,
            "status": "skipped" if enabled is False else "pending",
        })
    return stages


def first_enabled_stage(stages: list[dict]) -> dict | None:
    """Return the lowest-ordered stage that is still ``pending``."""
    pending = [s for s in stages if s["status"] == "pending"]
    if not pending:
        return None
    return min(pending, key=lambda s: s["stage_order"])


def plan_stage_transition(
    stage: dict,
    new_status: str,
    *,
    result: dict | None = None,
    error_count: int | None = None,
    warning_count: int | None = None,
    external_response: dict | None = None,
    log_url: str | None = None,
    now: datetime | None = None,
) -> dict | None:
    """Decide how *stage* moves to *new_status*.

    Returns the column updates to apply, or ``None`` when the update is a
    duplicate, a regression, or otherwise not a legal move.
    """
    current = stage["status"]
    if current == new_status or current in STAGE_TERMINAL:
        return None

    now = now or _now()

    if new_status == "running":
        if current != "pending":
            return None
        return {"status": "running", "started_at": now}

    if new_status in STAGE_COMPLETED:
        started_at = stage.get("started_at") or now
        changes: dict = {
            "status": new_status,
            "finished_at": now,
            "duration_seconds": _elapsed_seconds(started_at, now),
            "stage_result": result or {},
        }
        if stage.get("started_at") is None:
            changes["started_at"] = started_at
        if error_count is not None:
            changes["error_count"] = error_count
        if warning_count is not None:
            changes["warning_count"] = warning_count
        if external_response is not None:
            changes["external_response"] = external_response
        if log_url:
            changes["log_url"] = log_url
        return changes

    # running -> pending or anything -> skipped
    return None


def all_stages_terminal(stages: list[dict]) -> bool:
    """True when every stage is ``success``, ``failed`` or ``skipped``."""
    return all(s["status"] in STAGE_TERMINAL for s in stages)


def unfinished_stages(stages: list[dict]) -> list[dict]:
    """Stages still ``pending`` or ``running``, in stage order."""
    return sorted(
        (s for s in stages if s["status"] not in STAGE_TERMINAL),
        key=lambda s: s["stage_order"],
    )


# ---------------------------------------------------------------------------
# builds
# ---------------------------------------------------------------------------


def compute_build_status(stages: list[dict]) -> str:
    """``failed`` if any stage failed, else ``success``."""
    if any(s["status"] == "failed" for s in stages):
        return "failed"
    return "success"


def compute_release_status(layer: dict | None, build_status: str, stages: list[dict]) -> str | None:
    """Release status for a finished build, or ``None`` for non-release layers."""
    if not layer or layer.get("type") != "release":
        return None
    failed = sum(1 for s in stages if s["status"] == "failed")
    if build_status == "success" and failed == 0:
        return "available"
    return "pending_approval"


def plan_build_start(build: dict, *, now: datetime | None = None) -> dict | None:
    """Column updates for moving a build to ``running``."""
    if build["status"] != "pending":
        return None
    return {"status": "running", "started_at": now or _now()}


def plan_build_completion(build: dict, status: str, *, now: datetime | None = None) -> dict | None:
    """Column updates for moving a build into terminal *status*.

    Returns ``None`` if the build is already terminal.
    """
    if build["status"] in BUILD_TERMINAL:
        return None
    now = now or _now()
    return {
        "status": status,
        "finished_at": now,
        "duration_seconds": _elapsed_seconds(build.get("started_at") or now, now),
    }
