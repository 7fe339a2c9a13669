"""Project repository -- read access to projects, layers and users.

Project and layer management lives in the admin tooling; the orchestrator
only needs to resolve the rows a queue item refers to.
"""

import json
from uuid import UUID

from app.repos.db import get_pool


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

_PROJECT_JSON_COLS = ("scm_config", "build_config", "analysis_config")


def _project_to_dict(row) -> dict:
    """Convert a project row to a dict, parsing JSONB columns."""
    d = dict(row)
    for col in _PROJECT_JSON_COLS:
        val = d.get(col)
        if isinstance(val, str):
            d[col] = json.loads(val)
    return d


# ---------------------------------------------------------------------------
# projects
# ---------------------------------------------------------------------------


async def get_project(project_id: UUID) -> dict | None:
    """Fetch a project with its SCM / build / analysis configuration."""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        SELECT id, project_name, plan_id, scm_config, build_config,
               analysis_config, is_certified, log_path_template,
               created_at, updated_at
        FROM projects WHERE id = $1
        """,
        project_id,
    )
    return _project_to_dict(row) if row else None


# ---------------------------------------------------------------------------
# layers
# ---------------------------------------------------------------------------


async def get_layer(layer_id: UUID) -> dict | None:
    """Fetch a layer, including its per-stage enablement flags."""
    pool = await get_pool()
    row = await pool.fetchrow(
        """
        SELECT id, project_id, name, type, layer_path,
               build_enabled, sam_enabled, coverity_enabled,
               created_at, updated_at
        FROM layers WHERE id = $1
        """,
        layer_id,
    )
    return dict(row) if row else None


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------


async def get_user(user_id: UUID) -> dict | None:
    """Fetch a user by ID (``swdp_username`` is sent to the CI backend)."""
    pool = await get_pool()
    row = await pool.fetchrow(
        "SELECT id, username, swdp_username, email, created_at FROM users WHERE id = $1",
        user_id,
    )
    return dict(row) if row else None
