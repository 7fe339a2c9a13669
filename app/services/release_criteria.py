"""Quality metrics and release criteria for finished builds.

Release criteria are only computed for release-type layers.  A named
metric passes when its recorded status is ``"pass"`` *or* when no metric
was recorded for it at all.  The latter is a fail-open rule kept for
compatibility with existing release gates; see DESIGN.md.
"""

from app.clients.ci_client import CIBuildStatus
from app.services.stage_mapping import STAGE_BUILD

METRIC_NAMES: tuple[str, ...] = ("coverity", "sam", "onboardTest", "blackduck")

# Older records stored the onboard test metric under a lowercase key.
_METRIC_ALIASES: dict[str, tuple[str, ...]] = {
    "onboardTest": ("onboardTest", "onboardtest"),
}


def build_quality_metrics(status: CIBuildStatus | None, stages: list[dict]) -> dict:
    """Derive the quality-metric map for a finished build.

    ``onboardTest`` comes from the CI test counts (when reported); the
    analysis stages contribute ``pass``/``fail`` entries keyed by their
    lowercased name.  Skipped and unfinished stages record nothing.
    """
    metrics: dict = {}

    if status is not None and (
        status.successful_test_count is not None or status.failed_test_count is not None
    ):
        passed = status.successful_test_count or 0
        failed = status.failed_test_count or 0
        onboard: dict = {
            "status": "pass" if failed == 0 else "fail",
            "passedTests": passed,
            "failedTests": failed,
        }
        total = passed + failed
        if total > 0:
            onboard["score"] = int(passed / total * 100)
        metrics["onboardTest"] = onboard

    for stage in stages:
        name = stage["stage_name"]
        if name == STAGE_BUILD or stage["status"] not in ("success", "failed"):
            continue
        metrics[name.lower()] = {
            "status": "pass" if stage["status"] == "success" else "fail",
        }
    return metrics


def metric_passed(quality_metrics: dict | None, name: str) -> bool:
    """True if metric *name* is recorded as ``pass`` or not recorded at all."""
    metrics = quality_metrics or {}
    recorded = [
        metrics[key] for key in _METRIC_ALIASES.get(name, (name,))
        if isinstance(metrics.get(key), dict)
    ]
    if not recorded:
        return True
    return any(m.get("status") == "pass" for m in recorded)


def compute_release_criteria(quality_metrics: dict | None, stages: list[dict]) -> dict:
    """Return the criteria record persisted next to the quality metrics."""
    criteria = {
        f"{name}Passed": metric_passed(quality_metrics, name) for name in METRIC_NAMES
    }
    all_stages_passed = all(s["status"] in ("success", "skipped") for s in stages)
    criteria["allStagesPassed"] = all_stages_passed
    criteria["overallPassed"] = all_stages_passed and all(
        criteria[f"{name}Passed"] for name in METRIC_NAMES
    )
    return criteria
