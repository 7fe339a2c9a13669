"""Firmware build orchestrator API: app factory, logging and the scheduler lifecycle."""

import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers.build_queue import router as build_queue_router
from app.api.routers.builds import router as builds_router
from app.api.routers.health import router as health_router
from app.api.routers.webhooks import router as webhooks_router
from app.clients import ci_client
from app.config import VERSION, settings
from app.middleware import RequestIDLogFilter, RequestIDMiddleware
from app.middleware.exception_handler import setup_exception_handlers
from app.repos.db import close_pool, get_pool
from app.services import background, queue_scheduler, status_reconciler

logger = logging.getLogger(__name__)

_LOG_FILE_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 3


class _PlainFormatter(logging.Formatter):
    """``<time> <LEVEL> [<logger>] <request id or -> <message>``, no ANSI codes."""

    _TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

    def _parts(self, record: logging.LogRecord) -> tuple[str, str, str, str, str]:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return (
            self.formatTime(record, self._TIME_FORMAT),
            f"{record.levelname:<8s}",
            f"[{record.name.rsplit('.', 1)[-1][:20]:>20s}]",
            getattr(record, "request_id", "") or "-",
            message,
        )

    def format(self, record: logging.LogRecord) -> str:
        return " ".join(self._parts(record))


class _ColorFormatter(_PlainFormatter):
    """Terminal variant: short timestamps, level colors, dimmed metadata."""

    _TIME_FORMAT = "%H:%M:%S"
    _LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "1;31",
    }

    @staticmethod
    def _paint(code: str, text: str) -> str:
        return f"\033[{code}m{text}\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        stamp, level, name, rid, message = self._parts(record)
        color = self._LEVEL_COLORS.get(record.levelno, "0")
        meta = name if rid == "-" else f"{name} {rid[:8]}"
        return " ".join((
            self._paint("2", stamp),
            self._paint(color, level),
            self._paint("2", meta),
            self._paint(color, message),
        ))


def configure_logging() -> None:
    """Route all logging to stderr, plus ``LOG_FILE`` when configured."""
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_ColorFormatter())
    handlers: list[logging.Handler] = [console]

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_path, maxBytes=_LOG_FILE_BYTES, backupCount=_LOG_FILE_BACKUPS, encoding="utf-8",
        )
        rotating.setFormatter(_PlainFormatter())
        handlers.append(rotating)

    request_ids = RequestIDLogFilter()
    for handler in handlers:
        handler.addFilter(request_ids)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
    # Per-request and per-poll chatter from these drowns the tick logs.
    for chatty in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(chatty).setLevel(logging.WARNING)


queue_ticker = background.PeriodicTask(
    "queue-tick", settings.QUEUE_POLL_INTERVAL_MS / 1000, queue_scheduler.tick,
)
status_ticker = background.PeriodicTask(
    "status-poll", settings.STATUS_POLL_INTERVAL_MS / 1000, status_reconciler.poll_tick,
)


async def _start_schedulers() -> None:
    try:
        await get_pool()
        await queue_scheduler.recover_interrupted_dispatches()
    except Exception as exc:
        # The tickers reconnect on their own; an unreachable DB must not block start-up.
        logger.warning("Start-up queue recovery skipped, database not ready: %s", exc)
    await queue_ticker.start()
    await status_ticker.start()
    logger.info(
        "Schedulers started (queue every %d ms, status every %d ms, cap %d)",
        settings.QUEUE_POLL_INTERVAL_MS,
        settings.STATUS_POLL_INTERVAL_MS,
        settings.MAX_CONCURRENT_BUILDS,
    )


async def _shutdown() -> None:
    await queue_ticker.stop()
    await status_ticker.stop()
    # In-flight tasks use the HTTP client and the pool, so they go first.
    await background.shutdown_all()
    await ci_client.close_client()
    await close_pool()


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    if "pytest" not in sys.modules:
        await _start_schedulers()
    try:
        yield
    finally:
        await _shutdown()


_ROUTERS = (health_router, build_queue_router, builds_router, webhooks_router)


def create_app() -> FastAPI:
    """Build the orchestrator API with its middleware, error handlers and routers."""
    application = FastAPI(
        title="Firmware Build Orchestrator",
        version=VERSION,
        description="Queues, dispatches and tracks firmware builds on the CI server",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    setup_exception_handlers(application)

    application.add_middleware(RequestIDMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    for router in _ROUTERS:
        application.include_router(router)
    return application


app = create_app()
