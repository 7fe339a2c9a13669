"""Webhook router -- receives stage and build notifications from the CI server.

Notifications are fire-and-forget on the sender's side, so every
well-formed call is answered 200 with a ``status`` string even when the
build is unknown or processing fails (the failure is logged).  Only rate
limiting (429) and a bad signature (401) are reported as errors.
"""

import json
import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from app.api.rate_limit import webhook_limiter
from app.config import settings
from app.errors import OrchestratorError
from app.services import build_service, status_reconciler
from app.webhooks import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def extract_string(body: dict, key: str) -> str | None:
    """Read *key* as a string; ``{"value": ...}`` wrappers are unwrapped."""
    value = body.get(key)
    if isinstance(value, dict) and "value" in value:
        value = value["value"]
    if value is None:
        return None
    return str(value)


async def _read_body(request: Request) -> dict:
    """Rate-limit, verify the signature and decode the JSON body."""
    client_ip = request.client.host if request.client else "unknown"
    if not webhook_limiter.is_allowed(client_ip):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(webhook_limiter.retry_after(client_ip))},
        )

    raw = await request.body()
    if settings.CI_WEBHOOK_SECRET:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not verify_signature(raw, signature, settings.CI_WEBHOOK_SECRET):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        body = None
    return body if isinstance(body, dict) else {}


def _stage_payload(body: dict) -> dict:
    """The stage report is either nested under ``payload`` or the body itself."""
    nested = body.get("payload")
    return nested if isinstance(nested, dict) else body


async def _process_stage(body: dict, stage_label: str | None) -> dict:
    build_key = extract_string(body, "buildResultKey")
    if not build_key or not stage_label:
        logger.warning("Stage webhook missing buildResultKey or stageName: %s", body)
        return {"status": "ignored", "reason": "missing buildResultKey or stageName"}
    try:
        result = await status_reconciler.handle_stage_webhook(
            build_key, stage_label, _stage_payload(body),
        )
    except Exception:
        logger.exception("Error processing stage webhook for %s", build_key)
        return {"status": "error"}
    return {"status": result, "stage": stage_label}


# ── POST /api/webhooks/ci/stage ───────────────────────────────────────────


@router.post("/ci/stage")
async def stage_webhook(request: Request) -> dict:
    """Stage result with the stage named in the body (``stageName``)."""
    body = await _read_body(request)
    return await _process_stage(body, extract_string(body, "stageName"))


@router.post("/ci/stage/build")
async def build_stage_webhook(request: Request) -> dict:
    return await _process_stage(await _read_body(request), "Build")


@router.post("/ci/stage/sam")
async def sam_stage_webhook(request: Request) -> dict:
    return await _process_stage(await _read_body(request), "SAM")


@router.post("/ci/stage/coverity")
async def coverity_stage_webhook(request: Request) -> dict:
    return await _process_stage(await _read_body(request), "Coverity")


# ── POST /api/webhooks/ci/build ───────────────────────────────────────────


@router.post("/ci/build")
async def build_webhook(request: Request) -> dict:
    """Build-level notice; a finished build triggers an immediate poll."""
    body = await _read_body(request)
    build_key = extract_string(body, "buildResultKey")
    if not build_key:
        return {"status": "ignored", "reason": "missing buildResultKey"}
    try:
        result = await status_reconciler.handle_build_notification(
            build_key,
            extract_string(body, "lifeCycleState"),
            extract_string(body, "buildState"),
        )
    except Exception:
        logger.exception("Error processing build webhook for %s", build_key)
        return {"status": "error"}
    return {"status": result}


# ── POST /api/webhooks/build-notification ─────────────────────────────────


@router.post("/build-notification")
async def build_notification(request: Request) -> dict:
    """Generic notice keyed by our build id: ``{buildId, status, stageName?}``."""
    body = await _read_body(request)
    build_id = extract_string(body, "buildId")
    new_status = extract_string(body, "status")
    if not build_id or not new_status:
        return {"status": "ignored", "reason": "missing buildId or status"}
    stage_name = extract_string(body, "stageName")
    try:
        if stage_name:
            await build_service.update_stage_status(UUID(build_id), stage_name, new_status)
        else:
            await build_service.update_build_status(UUID(build_id), new_status)
    except (OrchestratorError, ValueError) as exc:
        logger.warning("Build notification for %s ignored: %s", build_id, exc)
        return {"status": "ignored"}
    except Exception:
        logger.exception("Error processing build notification for %s", build_id)
        return {"status": "error"}
    return {"status": "processed"}
