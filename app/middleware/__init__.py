"""Request correlation for the orchestrator API.

:class:`RequestIDMiddleware` is plain ASGI, so streaming responses and
lifespan events pass through untouched.  It tags each HTTP request with
an ``X-Request-ID`` (the caller's, or a new UUID-4), echoes it on the
response, and exposes it to logging through :data:`request_id_var`.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.types import ASGIApp, Message, Receive, Scope, Send

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_HEADER = b"x-request-id"
_MAX_ID_LENGTH = 64


def _incoming_id(scope: Scope) -> str:
    for name, value in scope.get("headers", []):
        if name == _HEADER:
            candidate = value.decode("latin-1").strip()[:_MAX_ID_LENGTH]
            if candidate:
                return candidate
    return str(uuid.uuid4())


class RequestIDMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_id(scope)
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_tagged(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = [*message.get("headers", []), (_HEADER, request_id.encode("latin-1"))]
                message = {**message, "headers": headers}
            await send(message)

        token = request_id_var.set(request_id)
        try:
            await self.app(scope, receive, send_tagged)
        finally:
            request_id_var.reset(token)


class RequestIDLogFilter(logging.Filter):
    """Stamp ``record.request_id``; empty for tick and startup logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True
