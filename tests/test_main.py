"""Tests for app/main.py -- app factory, lifespan and logging setup."""

import logging

from fastapi.testclient import TestClient

from app.main import _PlainFormatter, configure_logging, create_app, queue_ticker, status_ticker
from app.middleware import RequestIDLogFilter, request_id_var


def test_routes_registered():
    paths = {route.path for route in create_app().routes}
    for path in (
        "/health",
        "/api/build-queue",
        "/api/build-queue/{queue_id}/cancel",
        "/api/builds/{build_id}/stages/{stage_name}/status",
        "/api/build-requests/timed-out",
        "/api/webhooks/ci/stage",
        "/api/webhooks/build-notification",
    ):
        assert path in paths


def test_lifespan_does_not_start_tickers_under_pytest():
    with TestClient(create_app()) as client:
        assert client.get("/health/version").status_code == 200
        assert not queue_ticker.running
        assert not status_ticker.running


def test_configure_logging_installs_request_id_filter(monkeypatch):
    monkeypatch.setattr("app.config.settings.LOG_LEVEL", "debug")
    configure_logging()
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(
        isinstance(f, RequestIDLogFilter) for h in root.handlers for f in h.filters
    )


def test_log_file_handler(monkeypatch, tmp_path):
    log_file = tmp_path / "logs" / "orchestrator.log"
    monkeypatch.setattr("app.config.settings.LOG_FILE", str(log_file))
    configure_logging()
    logging.getLogger("app.test").warning("hello file")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "hello file" in log_file.read_text()
    monkeypatch.setattr("app.config.settings.LOG_FILE", "")
    configure_logging()


def test_plain_formatter_includes_request_id():
    token = request_id_var.set("req-42")
    try:
        record = logging.LogRecord("app.services.queue_scheduler", logging.INFO, __file__, 1,
                                   "Queued %s", ("x",), None)
        RequestIDLogFilter().filter(record)
    finally:
        request_id_var.reset(token)
    line = _PlainFormatter().format(record)
    assert "req-42" in line
    assert "Queued x" in line


def test_unhandled_error_keeps_request_id_header():
    application = create_app()

    @application.get("/boom")
    async def boom() -> None:
        raise RuntimeError("tick state corrupted")

    client = TestClient(application, raise_server_exceptions=False)
    response = client.get("/boom", headers={"X-Request-ID": "abc"})
    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "abc"
    assert response.json()["request_id"] == "abc"


def test_cors_exposes_request_id_header():
    client = TestClient(create_app())
    response = client.get("/health/version", headers={"Origin": "http://localhost:5173"})
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
    assert "X-Request-ID" in response.headers["access-control-expose-headers"]
