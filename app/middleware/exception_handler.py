"""Error-to-JSON mapping for the orchestrator API.

Every error leaves the service in the ``format_error_response`` envelope.
Orchestrator errors carry their own status; a 409 also reports the state
that blocked the operation.  Unexpected exceptions become an opaque 500
and their traceback only goes to the log.
"""

import logging
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.errors import OrchestratorError, StateConflictError, format_error_response

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    # Bare test apps run without RequestIDMiddleware.
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _where(request: Request) -> str:
    return f"{request.method} {request.url.path}"


def _respond(
    request: Request,
    status_code: int,
    error: str,
    detail: object = None,
    *,
    headers: dict | None = None,
    echo_id: bool = False,
    **extra: object,
) -> JSONResponse:
    request_id = _request_id(request)
    body = format_error_response(error=error, detail=detail, request_id=request_id)
    if echo_id:
        headers = {**(headers or {}), "X-Request-ID": request_id}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Answered by ServerErrorMiddleware, outside RequestIDMiddleware, so the
    # header has to be set here.
    logger.error(
        "Unhandled %s on %s [request_id=%s]",
        type(exc).__name__, _where(request), _request_id(request),
        exc_info=exc,
    )
    return _respond(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal Server Error",
        "Internal server error",
        echo_id=True,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("HTTP %s on %s: %s", exc.status_code, _where(request), exc.detail)
    message = str(exc.detail) if exc.detail else "Error"
    return _respond(
        request, exc.status_code, message, message,
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # ``ctx`` may hold exception instances, which are not JSON serialisable.
    problems = [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]
    logger.warning("Rejected payload on %s: %s", _where(request), problems)
    return _respond(
        request, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation failed", problems
    )


async def orchestrator_error_handler(
    request: Request, exc: OrchestratorError
) -> JSONResponse:
    """Map an :class:`OrchestratorError` to its own status code."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, _where(request), exc)
    extra = {}
    if isinstance(exc, StateConflictError) and exc.current_state:
        extra["current_state"] = exc.current_state
    return _respond(request, exc.status_code, type(exc).__name__, str(exc), **extra)


_HANDLERS = (
    (RequestValidationError, request_validation_handler),
    (StarletteHTTPException, http_error_handler),
    (OrchestratorError, orchestrator_error_handler),
    (Exception, unhandled_error_handler),
)


def setup_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope handlers on *app*."""
    for exc_class, handler in _HANDLERS:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
