"""Build queue repository -- database reads and writes for the build_queue table.

Every status transition is a conditional ``UPDATE ... WHERE status = ...``
so an illegal move touches no row and the function returns ``None``.
"""

import json
from uuid import UUID

from app.repos.db import get_pool

_COLUMNS = """
    id, project_id, layer_id, requester_id, req_method, status, priority,
    scm_override, build_override, retry_count, max_retries, last_error,
    build_id, queued_at, processed_at, completed_at
"""


def _row_to_dict(row) -> dict:
    """Convert a queue row to a dict, deserialising JSONB columns."""
    d = dict(row)
    for col in ("scm_override", "build_override"):
        val = d.get(col)
        if isinstance(val, str):
            d[col] = json.loads(val)
    return d


# ---------------------------------------------------------------------------
# create / read
# ---------------------------------------------------------------------------


async def create_queue_item(
    project_id: UUID,
    layer_id: UUID,
    *,
    requester_id: UUID | None = None,
    req_method: str = "manual",
    priority: int = 0,
    scm_override: dict | None = None,
    build_override: dict | None = None,
    max_retries: int = 3,
) -> dict:
    """Insert a new ``waiting`` queue item."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        INSERT INTO build_queue (project_id, layer_id, requester_id, req_method,
                                 status, priority, scm_override, build_override,
                                 max_retries)
        VALUES ($1, $2, $3, $4, 'waiting', $5, $6::jsonb, $7::jsonb, $8)
        RETURNING {_COLUMNS}
        """,
        project_id,
        layer_id,
        requester_id,
        req_method,
        priority,
        json.dumps(scm_override) if scm_override else None,
        json.dumps(build_override) if build_override else None,
        max_retries,
    )
    return _row_to_dict(row)


async def get_queue_item(queue_id: UUID) -> dict | None:
    """Fetch a single queue item by ID."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"SELECT {_COLUMNS} FROM build_queue WHERE id = $1",
        queue_id,
    )
    return _row_to_dict(row) if row else None


async def list_queue_items(status: str | None = None, *, limit: int = 200) -> list[dict]:
    """List queue items in dispatch order, optionally filtered by status."""
    pool = await get_pool()
    if status:
        rows = await pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM build_queue
            WHERE status = $1
            ORDER BY priority DESC, queued_at ASC
            LIMIT $2
            """,
            status,
            limit,
        )
    else:
        rows = await pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM build_queue
            ORDER BY priority DESC, queued_at ASC
            LIMIT $1
            """,
            limit,
        )
    return [_row_to_dict(r) for r in rows]


async def count_by_status(status: str) -> int:
    """Count queue items currently in *status*."""
    pool = await get_pool()
    count = await pool.fetchval(
        "SELECT COUNT(*) FROM build_queue WHERE status = $1",
        status,
    )
    return int(count or 0)


async def get_waiting_items(limit: int) -> list[dict]:
    """Fetch up to *limit* waiting items, highest priority then oldest first."""
    pool = await get_pool()
    rows = await pool.fetch(
        f"""
        SELECT {_COLUMNS} FROM build_queue
        WHERE status = 'waiting'
        ORDER BY priority DESC, queued_at ASC
        LIMIT $1
        """,
        limit,
    )
    return [_row_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# transitions
# ---------------------------------------------------------------------------


async def mark_processing(queue_id: UUID) -> dict | None:
    """``waiting`` -> ``processing``; records ``processed_at``."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_queue
           SET status = 'processing', processed_at = now()
         WHERE id = $1 AND status = 'waiting'
        RETURNING {_COLUMNS}
        """,
        queue_id,
    )
    return _row_to_dict(row) if row else None


async def mark_completed(queue_id: UUID, build_id: UUID | None = None) -> dict | None:
    """``processing`` -> ``completed``."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_queue
           SET status = 'completed', completed_at = now(),
               build_id = COALESCE($2, build_id)
         WHERE id = $1 AND status = 'processing'
        RETURNING {_COLUMNS}
        """,
        queue_id,
        build_id,
    )
    return _row_to_dict(row) if row else None


async def record_dispatch_failure(queue_id: UUID, error: str) -> dict | None:
    """Apply the retry policy to a ``processing`` item.

    Increments ``retry_count`` and stores ``last_error``; the item goes
    back to ``waiting`` while ``retry_count < max_retries`` and becomes
    ``failed`` otherwise.  Priority and ``queued_at`` are left alone so a
    retried item keeps its place.
    """
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_queue
           SET retry_count = retry_count + 1,
               last_error  = $2,
               status      = CASE WHEN retry_count + 1 >= max_retries
                                  THEN 'failed' ELSE 'waiting' END,
               completed_at = CASE WHEN retry_count + 1 >= max_retries
                                   THEN now() ELSE completed_at END
         WHERE id = $1 AND status = 'processing'
        RETURNING {_COLUMNS}
        """,
        queue_id,
        error[:2000],
    )
    return _row_to_dict(row) if row else None


async def cancel_queue_item(queue_id: UUID) -> dict | None:
    """``waiting`` -> ``cancelled``."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_queue
           SET status = 'cancelled', completed_at = now()
         WHERE id = $1 AND status = 'waiting'
        RETURNING {_COLUMNS}
        """,
        queue_id,
    )
    return _row_to_dict(row) if row else None


async def update_priority(queue_id: UUID, priority: int) -> dict | None:
    """Change the priority of a ``waiting`` item."""
    pool = await get_pool()
    row = await pool.fetchrow(
        f"""
        UPDATE build_queue SET priority = $2
         WHERE id = $1 AND status = 'waiting'
        RETURNING {_COLUMNS}
        """,
        queue_id,
        priority,
    )
    return _row_to_dict(row) if row else None
