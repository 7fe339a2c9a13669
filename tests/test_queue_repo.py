"""Tests for app/repos/queue_repo.py -- build_queue reads and conditional transitions."""

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from app.repos import queue_repo


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fake_pool():
    pool = AsyncMock()
    return pool


def _queue_row(**overrides):
    """Create a fake build_queue DB row."""
    defaults = {
        "id": uuid.uuid4(),
        "project_id": uuid.uuid4(),
        "layer_id": uuid.uuid4(),
        "requester_id": None,
        "req_method": "manual",
        "status": "waiting",
        "priority": 0,
        "scm_override": None,
        "build_override": None,
        "retry_count": 0,
        "max_retries": 3,
        "last_error": None,
        "build_id": None,
        "queued_at": datetime.now(timezone.utc),
        "processed_at": None,
        "completed_at": None,
    }
    defaults.update(overrides)
    return defaults


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_create_queue_item_serialises_overrides(mock_get_pool):
    pool = _fake_pool()
    pool.fetchrow.return_value = _queue_row(scm_override='{"branch": "hotfix"}', priority=5)
    mock_get_pool.return_value = pool

    result = await queue_repo.create_queue_item(
        uuid.uuid4(), uuid.uuid4(), priority=5, scm_override={"branch": "hotfix"},
    )

    assert result["scm_override"] == {"branch": "hotfix"}
    assert result["priority"] == 5
    args = pool.fetchrow.call_args.args
    assert "INSERT INTO build_queue" in args[0]
    assert json.loads(args[6]) == {"branch": "hotfix"}
    assert args[7] is None
    assert args[8] == 3


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_get_queue_item_not_found(mock_get_pool):
    pool = _fake_pool()
    pool.fetchrow.return_value = None
    mock_get_pool.return_value = pool

    assert await queue_repo.get_queue_item(uuid.uuid4()) is None


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_get_waiting_items_orders_by_priority_then_age(mock_get_pool):
    pool = _fake_pool()
    pool.fetch.return_value = [_queue_row(priority=9), _queue_row(priority=1)]
    mock_get_pool.return_value = pool

    result = await queue_repo.get_waiting_items(2)

    assert [r["priority"] for r in result] == [9, 1]
    query, limit = pool.fetch.call_args.args
    assert "status = 'waiting'" in query
    assert "ORDER BY priority DESC, queued_at ASC" in query
    assert limit == 2


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_list_queue_items_with_and_without_status(mock_get_pool):
    pool = _fake_pool()
    pool.fetch.return_value = []
    mock_get_pool.return_value = pool

    await queue_repo.list_queue_items("failed")
    assert pool.fetch.call_args.args[1:] == ("failed", 200)

    await queue_repo.list_queue_items()
    assert "WHERE" not in pool.fetch.call_args.args[0]


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_count_by_status(mock_get_pool):
    pool = _fake_pool()
    pool.fetchval.return_value = 4
    mock_get_pool.return_value = pool

    assert await queue_repo.count_by_status("processing") == 4


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_mark_processing_is_conditional(mock_get_pool):
    pool = _fake_pool()
    pool.fetchrow.return_value = None
    mock_get_pool.return_value = pool

    assert await queue_repo.mark_processing(uuid.uuid4()) is None
    assert "status = 'waiting'" in pool.fetchrow.call_args.args[0]


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_record_dispatch_failure_truncates_error(mock_get_pool):
    pool = _fake_pool()
    pool.fetchrow.return_value = _queue_row(status="failed", retry_count=3, last_error="x")
    mock_get_pool.return_value = pool

    result = await queue_repo.record_dispatch_failure(uuid.uuid4(), "e" * 5000)

    assert result["status"] == "failed"
    query, _, error = pool.fetchrow.call_args.args
    assert "retry_count + 1 >= max_retries" in query
    assert "status = 'processing'" in query
    assert len(error) == 2000


@pytest.mark.asyncio
@patch("app.repos.queue_repo.get_pool")
async def test_cancel_and_priority_only_from_waiting(mock_get_pool):
    pool = _fake_pool()
    pool.fetchrow.return_value = None
    mock_get_pool.return_value = pool

    assert await queue_repo.cancel_queue_item(uuid.uuid4()) is None
    assert "status = 'waiting'" in pool.fetchrow.call_args.args[0]
    assert await queue_repo.update_priority(uuid.uuid4(), 3) is None
    assert "status = 'waiting'" in pool.fetchrow.call_args.args[0]
