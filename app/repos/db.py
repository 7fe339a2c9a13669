"""asyncpg pool for the orchestrator tables.

Both tickers and the API share one pool.  The shorthand query methods
survive a dropped connection (database failover, a proxy reaping idle
sockets between scheduler ticks) by retrying on a fresh connection.
``pool.acquire()`` blocks such as the dispatch transaction are passed
through untouched: a broken transaction is the caller's failure to
handle, which for dispatch means the queue item's retry policy.
"""

import asyncio
import logging
from typing import Any

import asyncpg

from app.config import settings

logger = logging.getLogger(__name__)

_CONNECTION_LOST = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    ConnectionResetError,
    OSError,
)

_MAX_RETRIES = 3
_BACKOFF_BASE = 0.5
_BACKOFF_CAP = 5.0
_CONNECT_TIMEOUT = 20

_pool: asyncpg.Pool | None = None
_pool_loop: asyncio.AbstractEventLoop | None = None
_wrapper: "_ResilientPool | None" = None


def _backoff(attempt: int) -> float:
    return min(_BACKOFF_BASE * (2 ** attempt), _BACKOFF_CAP)


def _invalidate_pool() -> None:
    """Forget the current pool; the next get_pool() builds a new one."""
    global _pool, _pool_loop, _wrapper
    _pool = None
    _pool_loop = None
    _wrapper = None


async def _run_with_reconnect(method: str, func, *args: Any, **kw: Any):
    attempt = 0
    while True:
        try:
            return await func(*args, **kw)
        except _CONNECTION_LOST as exc:
            if attempt == _MAX_RETRIES:
                logger.error("DB %s failed after %d attempts: %s", method, attempt + 1, exc)
                _invalidate_pool()
                raise
            delay = _backoff(attempt)
            attempt += 1
            logger.warning(
                "DB %s lost its connection (%d/%d): %s; retrying in %.1fs",
                method, attempt, _MAX_RETRIES + 1, exc, delay,
            )
            await asyncio.sleep(delay)


class _ResilientPool:
    """asyncpg pool proxy whose fetch/fetchrow/fetchval/execute reconnect on failure.

    Anything else (``acquire``, ``close``, ``terminate``) is forwarded as-is.
    """

    __slots__ = ("_pool",)

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch(self, query: str, *args: Any, **kw: Any) -> list:
        return await _run_with_reconnect("fetch", self._pool.fetch, query, *args, **kw)

    async def fetchrow(self, query: str, *args: Any, **kw: Any):
        return await _run_with_reconnect("fetchrow", self._pool.fetchrow, query, *args, **kw)

    async def fetchval(self, query: str, *args: Any, **kw: Any):
        return await _run_with_reconnect("fetchval", self._pool.fetchval, query, *args, **kw)

    async def execute(self, query: str, *args: Any, **kw: Any) -> str:
        return await _run_with_reconnect("execute", self._pool.execute, query, *args, **kw)

    def __getattr__(self, name: str):
        return getattr(self._pool, name)


def _pool_options() -> dict[str, Any]:
    return {
        "dsn": settings.DATABASE_URL,
        "min_size": settings.DB_POOL_MIN_SIZE,
        "max_size": settings.DB_POOL_MAX_SIZE,
        "command_timeout": 60,
        "max_inactive_connection_lifetime": 300.0,
        "server_settings": {
            "application_name": "build-orchestrator",
            "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
            "idle_in_transaction_session_timeout": "60000",
        },
    }


async def get_pool() -> _ResilientPool:
    """Return the shared pool, creating it on first use.

    A pool bound to a different event loop (one test's loop leaking into
    the next) is terminated and replaced.
    """
    global _pool, _pool_loop, _wrapper
    loop = asyncio.get_running_loop()
    if _pool is not None and _pool_loop is not loop:
        _pool.terminate()
        _invalidate_pool()
    if _wrapper is None:
        _pool = await asyncio.wait_for(
            asyncpg.create_pool(**_pool_options()), timeout=_CONNECT_TIMEOUT
        )
        _pool_loop = loop
        _wrapper = _ResilientPool(_pool)
        logger.info(
            "DB pool ready (min=%d, max=%d)",
            settings.DB_POOL_MIN_SIZE, settings.DB_POOL_MAX_SIZE,
        )
    return _wrapper


async def close_pool() -> None:
    """Close the shared pool if one is open."""
    if _pool is not None:
        await _pool.close()
    _invalidate_pool()
