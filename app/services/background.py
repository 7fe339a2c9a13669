"""Background execution helpers: periodic tasks, tracked fire-and-forget
tasks and per-key locks.

* :class:`PeriodicTask` runs the queue tick and the status poll tick.
* :func:`spawn` launches continuations (trigger, poll, cancel calls)
  without awaiting them; :func:`shutdown_all` cancels whatever is still
  in flight when the app stops.
* :class:`KeyedLock` serialises writers per build id.  It is
  process-local: running several app workers against one database
  needs a database-side lock instead.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()  # tracked for graceful shutdown


def _track_task(task: asyncio.Task) -> asyncio.Task:
    """Register an asyncio.Task so it can be cancelled on shutdown."""
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def spawn(coro: Awaitable[Any], *, name: str | None = None) -> asyncio.Task:
    """Schedule *coro* as a tracked task and return immediately."""
    return _track_task(asyncio.create_task(coro, name=name))  # type: ignore[arg-type]


def pending_task_count() -> int:
    return len(_background_tasks)


async def drain(timeout: float | None = None) -> None:
    """Wait until every tracked task (including ones they spawn) has finished."""
    async def _wait() -> None:
        while _background_tasks:
            await asyncio.gather(*list(_background_tasks), return_exceptions=True)

    await asyncio.wait_for(_wait(), timeout)


async def shutdown_all() -> None:
    """Cancel every tracked background task and wait for them to finish.

    Called from the FastAPI lifespan shutdown hook, before the HTTP client
    and database pool are closed.
    """
    for task in list(_background_tasks):
        task.cancel()

    if _background_tasks:
        await asyncio.gather(*_background_tasks, return_exceptions=True)

    logger.info("All background tasks shut down cleanly")


# ── periodic tasks ────────────────────────────────────────────


class PeriodicTask:
    """Run an async callable on a fixed delay until stopped.

    The next run starts *interval_seconds* after the previous one returned,
    so runs never overlap.  An exception in one run is logged and the loop
    carries on.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop (call from lifespan startup)."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
            logger.info("Started %s (every %.1fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop (call from lifespan shutdown)."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Stopped %s", self.name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s run failed", self.name)


# ── per-key locks ─────────────────────────────────────────────


class KeyedLock:
    """A registry of :class:`asyncio.Lock` objects keyed by id.

    Entries are created on first use and dropped once no coroutine holds
    or waits on them, so the registry does not grow with build history.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


# Shared by the queue scheduler, the reconciler and explicit build operations.
build_locks = KeyedLock()
