"""Translate CI-backend vocabulary into canonical stage names and statuses."""

import re

from app.errors import UnmappableStageNameError

STAGE_BUILD = "Build"
STAGE_SAM = "SAM"
STAGE_COVERITY = "Coverity"

# Checked in order; the first canonical stage with a matching token wins.
_STAGE_TOKENS: list[tuple[str, tuple[str, ...]]] = [
    (STAGE_BUILD, ("build", "compile")),
    (STAGE_SAM, ("sam", "static")),
    (STAGE_COVERITY, ("coverity", "cov")),
]

_NON_LETTERS = re.compile(r"[^a-z]")

_STATE_MAP: dict[str, str] = {
    "successful": "success",
    "success": "success",
    "failed": "failed",
    "failure": "failed",
    "in progress": "running",
    "building": "running",
    "running": "running",
    "queued": "pending",
    "pending": "pending",
    "notbuilt": "pending",
}


def normalize_label(label: str) -> str:
    """Lowercase *label* and strip everything that is not a letter."""
    return _NON_LETTERS.sub("", label.lower())


def map_stage_name(label: str | None) -> str | None:
    """Map an external stage label onto Build / SAM / Coverity.

    Matching is by substring containment on the normalized label, so
    ``"Compile & Link"`` maps to ``Build`` and ``"SAM Analysis"`` to
    ``SAM``.  Returns ``None`` when nothing matches.
    """
    if not label:
        return None
    normalized = normalize_label(label)
    for canonical, tokens in _STAGE_TOKENS:
        if any(token in normalized for token in tokens):
            return canonical
    return None


def require_stage_name(label: str | None) -> str:
    """Like :func:`map_stage_name` but raise on an unmatched label."""
    canonical = map_stage_name(label)
    if canonical is None:
        raise UnmappableStageNameError(label or "")
    return canonical


def map_lifecycle_state(state: str | None) -> str:
    """Map an external state string onto a canonical stage status.

    Unknown and missing values map to ``pending`` so they never complete
    a stage by accident.
    """
    if not state:
        return "pending"
    return _STATE_MAP.get(state.strip().lower(), "pending")
