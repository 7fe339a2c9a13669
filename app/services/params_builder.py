"""CI variable and build-snapshot construction.

Turns a project's stored SCM / build / analysis configuration plus the
per-request overrides from a queue item into:

* the flat variable set sent with the trigger call, and
* the immutable snapshot persisted on the build for reproducibility.

Overrides win key-by-key over project defaults (shallow merge).
"""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def merge_config(base: dict | None, override: dict | None) -> dict:
    """Shallow-merge *override* over *base*; neither input is mutated."""
    merged: dict = {}
    if base:
        merged.update(base)
    if override:
        merged.update(override)
    return merged


def _str(config: dict | None, key: str, default: str | None = None) -> str | None:
    if not config:
        return default
    value = config.get(key)
    return str(value) if value is not None else default


def _bool(config: dict | None, key: str, default: bool = False) -> bool:
    if not config:
        return default
    value = config.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _yn(flag: bool) -> str:
    return "Y" if flag else "N"


def _layer_flag(layer: dict, key: str) -> bool:
    # Missing flags count as enabled, matching initial stage creation.
    return layer.get(key) is not False


def generate_params(
    project: dict,
    layer: dict,
    requester: dict | None,
    scm_override: dict | None = None,
    build_override: dict | None = None,
) -> dict[str, Any]:
    """Return the CI variable set for dispatching *layer* of *project*.

    Values are left typed here (``None``, dicts); :func:`stringify_variables`
    turns them into the wire form when the trigger request is issued.
    """
    scm = merge_config(project.get("scm_config"), scm_override)
    build = merge_config(project.get("build_config"), build_override)
    analysis = project.get("analysis_config") or {}

    coverity_enabled = _layer_flag(layer, "coverity_enabled")
    if coverity_enabled and isinstance(analysis.get("coverity"), dict):
        coverity_enabled = _bool(analysis["coverity"], "enabled", True)
    sam = analysis.get("sam") if isinstance(analysis.get("sam"), dict) else None

    params: dict[str, Any] = {
        # identity
        "PROJECTID": str(project["id"]),
        "PROJECTNAME": project.get("project_name"),
        "PLANID": project.get("plan_id"),
        "SWDPUSERNAME": requester.get("swdp_username") if requester else None,
        "BUILDREQUESTID": None,
        # scm
        "REPOPATH": _str(scm, "repo_path"),
        "GITBRANCHNAME": _str(scm, "branch", "main"),
        "BUILDREVISION": _str(scm, "revision", "HEAD"),
        "FASTCHECKOUTYN": _yn(_bool(scm, "fast_checkout")),
        "SOURCEZIPYN": _yn(_bool(scm, "source_zip")),
        "autocommit_with_path": _str(scm, "auto_commit_path"),
        # build
        "BUILDTYPECD": _str(build, "type", "DAILY"),
        "TARGET": _str(build, "target", "OA"),
        "BUILDOSENV": _str(build, "os_env", "LINUX"),
        "COMPILER": _str(build, "compiler_main", "ARMCC"),
        "COMPILERDICT": build.get("compiler_dict"),
        "BUILDBATNAME": _str(build, "script_name"),
        "BUILDBATOPTION": _str(build, "script_option"),
        "FASTBUILDYN": _yn(_bool(build, "fast_build")),
        # analysis
        "CICOVERITYYN": _yn(coverity_enabled),
        "SAMBATNAME": _str(sam, "script"),
        "SAMBATPATH": _str(sam, "path"),
        "CIBLACKDUCKYN": "N",
        "CICODINGRULEYN": "N",
        "TRIAGE": _str(analysis, "triage_level", "HIGH"),
        # control
        "ISCERTIFIEDYN": _yn(bool(project.get("is_certified"))),
        "COMPILERLOGPATH": project.get("log_path_template"),
        "LAYER_NAME": layer.get("name"),
        "LAYER_PATH": layer.get("layer_path"),
    }

    logger.debug(
        "Generated CI variables for project %s layer %s: %s",
        project["id"], layer["id"], params,
    )
    return params


def create_build_snapshot(
    project: dict,
    layer: dict,
    scm_override: dict | None = None,
    build_override: dict | None = None,
) -> dict:
    """Return the configuration snapshot stored on the build."""
    return {
        "scm": merge_config(project.get("scm_config"), scm_override),
        "build": merge_config(project.get("build_config"), build_override),
        "analysis": project.get("analysis_config") or {},
        "layer": {
            "id": str(layer["id"]),
            "name": layer.get("name"),
            "type": layer.get("type"),
            "path": layer.get("layer_path"),
            "buildEnabled": _layer_flag(layer, "build_enabled"),
            "samEnabled": _layer_flag(layer, "sam_enabled"),
            "coverityEnabled": _layer_flag(layer, "coverity_enabled"),
        },
    }


def stringify_variables(params: dict[str, Any]) -> dict[str, str]:
    """Convert a variable set into the string map the CI backend accepts.

    ``None`` values are dropped; dicts and lists are JSON encoded.
    """
    out: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            out[key] = json.dumps(value, separators=(",", ":"), sort_keys=True)
        elif isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out
