"""CI backend client -- trigger, status and stop calls against the REST API.

All calls are async and share a single pooled ``httpx.AsyncClient``.
Every transport, auth, HTTP-status or decoding failure is raised as
:class:`CIClientError`; the client never retries.  Retry policy lives in
the queue scheduler.
"""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.errors import ExternalCallError

logger = logging.getLogger(__name__)

_API_PREFIX = "/rest/api/latest"


class CIClientError(ExternalCallError):
    """A CI backend call failed.

    ``status_code`` on the instance stays 502 (it is what the API layer
    returns); the upstream HTTP status, when there was one, is kept in
    ``upstream_status``.
    """

    def __init__(self, message: str, *, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


# ── Response models ─────────────────────────────────────────────────────────


class CITriggerResult(BaseModel):
    """Body returned by the queue (trigger) endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    build_result_key: str = Field(alias="buildResultKey")
    build_number: int | None = Field(default=None, alias="buildNumber")
    plan_key: str | None = Field(default=None, alias="planKey")


class CIStage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    state: str | None = None


class _CIStages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stage: list[CIStage] = Field(default_factory=list)


class CIBuildStatus(BaseModel):
    """Body returned by the result (status) endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str | None = None
    state: str | None = None
    life_cycle_state: str | None = Field(default=None, alias="lifeCycleState")
    build_state: str | None = Field(default=None, alias="buildState")
    build_number: int | None = Field(default=None, alias="buildNumber")
    stages_wrapper: _CIStages | None = Field(default=None, alias="stages")
    successful_test_count: int | None = Field(default=None, alias="successfulTestCount")
    failed_test_count: int | None = Field(default=None, alias="failedTestCount")
    artifacts: Any = None

    @property
    def stages(self) -> list[CIStage]:
        return self.stages_wrapper.stage if self.stages_wrapper else []

    @property
    def is_finished(self) -> bool:
        return (self.life_cycle_state or "").lower() == "finished"

    @property
    def is_successful(self) -> bool:
        return "successful" in (
            (self.state or "").lower(),
            (self.build_state or "").lower(),
        )


# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _auth_headers() -> dict:
    """Bearer header when a token is configured."""
    if settings.CI_API_TOKEN:
        return {"Authorization": f"Bearer {settings.CI_API_TOKEN}"}
    return {}


def _basic_auth() -> httpx.BasicAuth | None:
    """Username/password auth, used only when there is no token."""
    if settings.CI_API_TOKEN or not (settings.CI_USERNAME and settings.CI_PASSWORD):
        return None
    return httpx.BasicAuth(settings.CI_USERNAME, settings.CI_PASSWORD)


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for CI API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            base_url=settings.CI_BASE_URL,
            timeout=settings.CI_REQUEST_TIMEOUT,
            auth=_basic_auth(),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                **_auth_headers(),
            },
        )
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _request(method: str, path: str, **kwargs: Any) -> httpx.Response:
    """Issue a request and translate every failure into :class:`CIClientError`."""
    client = _get_client()
    try:
        response = await client.request(method, path, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise CIClientError(
            f"CI backend returned HTTP {status} for {method} {path}",
            upstream_status=status,
        ) from exc
    except httpx.HTTPError as exc:
        raise CIClientError(
            f"CI backend unreachable for {method} {path}: {exc.__class__.__name__}: {exc}"
        ) from exc
    return response


def _decode(response: httpx.Response, model: type[BaseModel], what: str):
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise CIClientError(f"Unparsable CI {what} response: {exc}") from exc


# ── Operations ───────────────────────────────────────────────────────────────


async def trigger_build(plan_key: str, variables: dict[str, str] | None = None) -> CITriggerResult:
    """Queue a run of *plan_key* with the given plan variables.

    Each variable is sent as a ``bamboo.variable.<NAME>`` query parameter.
    """
    params = {f"bamboo.variable.{k}": v for k, v in (variables or {}).items()}
    logger.info("Triggering CI build for plan %s", plan_key)
    response = await _request("POST", f"{_API_PREFIX}/queue/{plan_key}", params=params)
    result = _decode(response, CITriggerResult, "trigger")
    logger.info("CI build triggered: %s (#%s)", result.build_result_key, result.build_number)
    return result


async def get_build_status(build_result_key: str) -> CIBuildStatus:
    """Fetch the current status of a CI build result, including stages."""
    logger.debug("Fetching CI build status for %s", build_result_key)
    response = await _request(
        "GET",
        f"{_API_PREFIX}/result/{build_result_key}",
        params={"expand": "stages"},
    )
    return _decode(response, CIBuildStatus, "status")


async def stop_build(build_result_key: str) -> None:
    """Ask the CI backend to stop a queued or running build."""
    logger.info("Stopping CI build %s", build_result_key)
    await _request("DELETE", f"{_API_PREFIX}/queue/{build_result_key}")
    logger.info("CI build stopped: %s", build_result_key)
