"""Build repository -- database reads and writes for builds, build_stage_results and build_requests tables."""

import json
from datetime import datetime
from uuid import UUID

from app.repos.db import get_pool


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

_BUILD_COLUMNS = """
    id, project_id, layer_id, queue_id, build_request_id, round, build_number,
    status, trigger_type, triggered_by, external_key, external_number,
    snapshot, artifacts, quality_metrics, release_criteria, release_status,
    started_at, finished_at, duration_seconds, created_at
"""

_STAGE_COLUMNS = """
    id, build_id, stage_name, stage_order, status, error_count, warning_count,
    stage_result, external_response, log_url, started_at, finished_at,
    duration_seconds
"""

_REQUEST_COLUMNS = """
    id, queue_id, project_id, layer_id, build_id, plan_key, request_params,
    request_status, external_key, external_number, error_message, sent_at,
    responded_at
"""

_BUILD_JSON_COLS = ("snapshot", "artifacts", "quality_metrics", "release_criteria")
_STAGE_JSON_COLS = ("stage_result", "external_response")

_BUILD_UPDATABLE = frozenset({
    "status", "external_key", "external_number", "artifacts", "quality_metrics",
    "release_criteria", "release_status", "started_at", "finished_at",
    "duration_seconds",
})
_STAGE_UPDATABLE = frozenset({
    "status", "error_count", "warning_count", "stage_result",
    "external_response", "log_url", "started_at", "finished_at",
    "duration_seconds",
})


def _decode(row, json_cols: tuple[str, ...]) -> dict:
    """Convert a row to a dict, deserialising JSONB columns."""
    d = dict(row)
    for col in json_cols:
        val = d.get(col)
        if isinstance(val, str):
            d[col] = json.loads(val)
    return d


def _build_to_dict(row) -> dict:
    return _decode(row, _BUILD_JSON_COLS)


def _stage_to_dict(row) -> dict:
    return _decode(row, _STAGE_JSON_COLS)


def _request_to_dict(row) -> dict:
    return _decode(row, ("request_params",))


def _set_clause(
    changes: dict,
    allowed: frozenset[str],
    json_cols: tuple[str, ...],
    params: list,
) -> list[str]:
    """Append values for *changes* to *params* and return the SET fragments."""
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    sets = []
    for col, value in changes.items():
        params.append(json.dumps(value, default=str) if col in json_cols and value is not None else value)
        cast = "::jsonb" if col in json_cols else ""
        sets.append(f"{col} = ${len(params)}{cast}")
    return sets


# ---------------------------------------------------------------------------
# dispatch (numbering + build + stages + request in one transaction)
# ---------------------------------------------------------------------------


async def create_build_with_stages(
    queue_item: dict,
    *,
    plan_key: str | None,
    request_params: dict,
    snapshot: dict,
    stages: list[dict],
    trigger_type: str,
    triggered_by: UUID | None,
) -> dict:
    """Create a build, its stage rows and the dispatch audit row atomically.

    ``round`` (per layer) and ``build_number`` (per project) are computed as
    ``MAX + 1`` while a transaction-scoped advisory lock on the project is
    held, so concurrent dispatches for the same project serialise and the
    sequences stay gap-free.

    Returns ``{"build": ..., "stages": [...], "request": ...}``.
    """
    project_id = queue_item["project_id"]
    layer_id = queue_item["layer_id"]

    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext($1))",
                str(project_id),
            )
            next_round = await conn.fetchval(
                "SELECT COALESCE(MAX(round), 0) + 1 FROM builds WHERE layer_id = $1",
                layer_id,
            )
            next_number = await conn.fetchval(
                "SELECT COALESCE(MAX(build_number), 0) + 1 FROM builds WHERE project_id = $1",
                project_id,
            )

            build_row = await conn.fetchrow(
                f"""
                INSERT INTO builds (project_id, layer_id, queue_id, round, build_number,
                                    status, trigger_type, triggered_by, snapshot)
                VALUES ($1, $2, $3, $4, $5, 'pending', $6, $7, $8::jsonb)
                RETURNING {_BUILD_COLUMNS}
                """,
                project_id,
                layer_id,
                queue_item["id"],
                next_round,
                next_number,
                trigger_type,
                triggered_by,
                json.dumps(snapshot, default=str),
            )
            build_id = build_row["id"]

            stage_rows = []
            for stage in stages:
                stage_rows.append(await conn.fetchrow(
                    f"""
                    INSERT INTO build_stage_results (build_id, stage_name, stage_order, status)
                    VALUES ($1, $2, $3, $4)
                    RETURNING {_STAGE_COLUMNS}
                    """,
                    build_id,
                    stage["stage_name"],
                    stage["stage_order"],
                    stage["status"],
                ))

            request_row = await conn.fetchrow(
                f"""
                INSERT INTO build_requests (queue_id, project_id, layer_id, build_id,
                                            plan_key, request_params, request_status)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, 'sent')
                RETURNING {_REQUEST_COLUMNS}
                """,
                queue_item["id"],
                project_id,
                layer_id,
                build_id,
                plan_key,
                json.dumps(request_params, default=str),
            )
            build_row = await conn.fetchrow(
                f"""
                UPDATE builds SET build_request_id = $2 WHERE id = $1
                RETURNING {_BUILD_COLUMNS}
                """,
                build_id,
                request_row["id"],
            )

    return {
        "build": _build_to_dict(build_row),
        "stages": [_stage_to_dict(r) for r in stage_rows],
        "request": _request_to_dict(request_row),
    }


# ---------------------------------------------------------------------------
# builds
# ---------------------------------------------------------------------------


async def get_build(build_id: UUID) -> dict | None:
    """Fetch a single build by ID."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_BUILD_COLUMNS} FROM builds WHERE id = $1",
        build_id,
    )
    return _build_to_dict(row) if row else None


async def get_build_by_external_key(external_key: str) -> dict | None:
    """Resolve a build from the CI backend's result key."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_BUILD_COLUMNS} FROM builds WHERE external_key = $1",
        external_key,
    )
    return _build_to_dict(row) if row else None


async def get_active_builds(*, with_external_key: bool = False) -> list[dict]:
    """Fetch ``pending`` / ``running`` builds, oldest first.

    With *with_external_key* only builds the CI backend has acknowledged
    are returned (the poller's working set).
    """
    pool = await get_pool()
    key_filter = "AND external_key IS NOT NULL" if with_external_key else ""
    rows = await pool.fetch(
        f"""
        SELECT {_BUILD_COLUMNS} FROM builds
        WHERE status IN ('pending', 'running') {key_filter}
        ORDER BY created_at ASC
        """,
    )
    return [_build_to_dict(r) for r in rows]


async def update_build(build_id: UUID, changes: dict, *, only_if_active: bool = False) -> dict | None:
    """Apply *changes* to a build and return the updated row.

    With *only_if_active* the update is skipped (returns ``None``) when the
    build already holds a terminal status.
    """
    if not changes:
        return await get_build(build_id)
    params: list = [build_id]
    sets = _set_clause(changes, _BUILD_UPDATABLE, _BUILD_JSON_COLS, params)
    guard = " AND status IN ('pending', 'running')" if only_if_active else ""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE builds SET {', '.join(sets)}
        WHERE id = $1{guard}
        RETURNING {_BUILD_COLUMNS}
        """,
        *params,
    )
    return _build_to_dict(row) if row else None


# ---------------------------------------------------------------------------
# build_stage_results
# ---------------------------------------------------------------------------


async def get_stages(build_id: UUID) -> list[dict]:
    """Fetch all stage rows of a build in stage order."""
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_STAGE_COLUMNS} FROM build_stage_results
        WHERE build_id = $1
        ORDER BY stage_order ASC
        """,
        build_id,
    )
    return [_stage_to_dict(r) for r in rows]


async def update_stage(stage_id: UUID, changes: dict) -> dict | None:
    """Apply *changes* to a stage row and return the updated row.

    Rows already in a terminal status are never touched.
    """
    if not changes:
        return None
    params: list = [stage_id]
    sets = _set_clause(changes, _STAGE_UPDATABLE, _STAGE_JSON_COLS, params)
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_stage_results SET {', '.join(sets)}
        WHERE id = $1 AND status IN ('pending', 'running')
        RETURNING {_STAGE_COLUMNS}
        """,
        *params,
    )
    return _stage_to_dict(row) if row else None


# ---------------------------------------------------------------------------
# build_requests
# ---------------------------------------------------------------------------


async def mark_request_accepted(
    request_id: UUID,
    external_key: str,
    external_number: int | None = None,
) -> dict | None:
    """``sent`` -> ``accepted`` with the CI backend's result key."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_requests
           SET request_status = 'accepted', external_key = $2,
               external_number = $3, responded_at = now()
         WHERE id = $1 AND request_status = 'sent'
        RETURNING {_REQUEST_COLUMNS}
        """,
        request_id,
        external_key,
        external_number,
    )
    return _request_to_dict(row) if row else None


async def mark_request_error(request_id: UUID, error: str) -> dict | None:
    """``sent`` -> ``error`` with the failure text."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_requests
           SET request_status = 'error', error_message = $2, responded_at = now()
         WHERE id = $1 AND request_status = 'sent'
        RETURNING {_REQUEST_COLUMNS}
        """,
        request_id,
        error[:2000],
    )
    return _request_to_dict(row) if row else None


async def get_timed_out_requests(cutoff: datetime) -> list[dict]:
    """Requests still ``sent`` that were issued before *cutoff*.

    Query only; nothing marks these as ``timeout`` automatically.
    """
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_REQUEST_COLUMNS} FROM build_requests
        WHERE request_status = 'sent' AND sent_at < $1
        ORDER BY sent_at ASC
        """,
        cutoff,
    )
    return [_request_to_dict(r) for r in rows]


async def get_latest_request_for_queue_item(queue_id: UUID) -> dict | None:
    """The most recent dispatch audit row of a queue item, if any."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        SELECT {_REQUEST_COLUMNS} FROM build_requests
        WHERE queue_id = $1
        ORDER BY sent_at DESC
        LIMIT 1
        """,
        queue_id,
    )
    return _request_to_dict(row) if row else None
