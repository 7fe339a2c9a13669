"""Shared test fixtures.

Provides:
- ``set_test_config``: autouse fixture that patches settings and resets
  process-wide state (scheduler toggle, webhook rate limiter)
- ``fake_store``: in-memory stand-in for the project/queue/build
  repositories, patched over the real modules
- ``fake_ci``: scripted CI backend patched over ``app.clients.ci_client``
- ``PROJECT_ID`` / ``LAYER_ID`` / ``USER_ID`` / ``BUILD_ID``: reusable IDs
"""

import copy
import itertools
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from app.api.rate_limit import webhook_limiter
from app.clients.ci_client import CIBuildStatus, CIClientError, CITriggerResult
from app.services import queue_scheduler


# ---------------------------------------------------------------------------
# Canonical test identifiers
# ---------------------------------------------------------------------------

USER_ID = UUID("22222222-2222-2222-2222-222222222222")
PROJECT_ID = UUID("44444444-4444-4444-4444-444444444444")
LAYER_ID = UUID("66666666-6666-6666-6666-666666666666")
BUILD_ID = UUID("55555555-5555-5555-5555-555555555555")

# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "app.config.settings.DATABASE_URL": "postgresql://test@localhost/test",
    "app.config.settings.CI_BASE_URL": "https://ci.example.test",
    "app.config.settings.CI_API_TOKEN": "",
    "app.config.settings.CI_USERNAME": "",
    "app.config.settings.CI_PASSWORD": "",
    "app.config.settings.CI_WEBHOOK_SECRET": "",
    "app.config.settings.FRONTEND_URL": "http://localhost:5173",
    "app.config.settings.MAX_CONCURRENT_BUILDS": 5,
    "app.config.settings.SCHEDULER_ENABLED": True,
    "app.config.settings.QUEUE_MAX_RETRIES": 3,
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch):
    """Deterministic settings and clean process-wide state for every test."""
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)
    queue_scheduler.reset_scheduler_toggle()
    webhook_limiter.reset()
    yield
    queue_scheduler.reset_scheduler_toggle()


# ---------------------------------------------------------------------------
# Fake repositories
# ---------------------------------------------------------------------------

_TERMINAL_STAGE = {"success", "failed", "skipped"}
_TERMINAL_BUILD = {"success", "failed", "cancelled"}


class FakeStore:
    """In-memory implementation of the repository functions the services use.

    Rows are plain dicts, copied on the way in and out like real query
    results.  ``max_processing_seen`` records the highest number of
    simultaneously ``processing`` queue items.
    """

    def __init__(self) -> None:
        self.users: dict[UUID, dict] = {}
        self.projects: dict[UUID, dict] = {}
        self.layers: dict[UUID, dict] = {}
        self.queue: dict[UUID, dict] = {}
        self.builds: dict[UUID, dict] = {}
        self.stages: dict[UUID, dict] = {}
        self.requests: dict[UUID, dict] = {}
        self.max_processing_seen = 0
        self._ticks = itertools.count()
        self._epoch = datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._epoch + timedelta(milliseconds=next(self._ticks))

    # ── seeding ───────────────────────────────────────────────

    def add_user(self, user_id: UUID = USER_ID, **overrides) -> dict:
        row = {"id": user_id, "username": "jdoe", "swdp_username": "swdp.jdoe",
               "email": "jdoe@example.com", "created_at": self.now()}
        row.update(overrides)
        self.users[user_id] = row
        return row

    def add_project(self, project_id: UUID = PROJECT_ID, **overrides) -> dict:
        row = {
            "id": project_id,
            "project_name": "ModemFW",
            "plan_id": "FW-MODEM",
            "scm_config": {"repo_path": "git@scm:fw/modem.git", "branch": "develop"},
            "build_config": {"type": "DAILY", "compiler_main": "GCC"},
            "analysis_config": {"sam": {"script": "sam.bat", "path": "tools/sam"}},
            "is_certified": False,
            "log_path_template": "/logs/{build}",
            "created_at": self.now(),
            "updated_at": self.now(),
        }
        row.update(overrides)
        self.projects[project_id] = row
        return row

    def add_layer(self, layer_id: UUID = LAYER_ID, project_id: UUID = PROJECT_ID, **overrides) -> dict:
        row = {
            "id": layer_id,
            "project_id": project_id,
            "name": "main",
            "type": "layer",
            "layer_path": "layers/main",
            "build_enabled": True,
            "sam_enabled": True,
            "coverity_enabled": True,
            "created_at": self.now(),
            "updated_at": self.now(),
        }
        row.update(overrides)
        self.layers[layer_id] = row
        return row

    def stages_of(self, build_id: UUID) -> list[dict]:
        return sorted(
            (copy.deepcopy(s) for s in self.stages.values() if s["build_id"] == build_id),
            key=lambda s: s["stage_order"],
        )

    def stage(self, build_id: UUID, name: str) -> dict:
        return next(s for s in self.stages_of(build_id) if s["stage_name"] == name)

    def patch_repos(self, monkeypatch) -> None:
        for name in ("get_project", "get_layer", "get_user"):
            monkeypatch.setattr(f"app.repos.project_repo.{name}", getattr(self, name))
        for name in (
            "create_queue_item", "get_queue_item", "list_queue_items", "count_by_status",
            "get_waiting_items", "mark_processing", "mark_completed",
            "record_dispatch_failure", "cancel_queue_item", "update_priority",
        ):
            monkeypatch.setattr(f"app.repos.queue_repo.{name}", getattr(self, name))
        for name in (
            "create_build_with_stages", "get_build", "get_build_by_external_key",
            "get_active_builds", "update_build", "get_stages", "update_stage",
            "mark_request_accepted", "mark_request_error", "get_timed_out_requests",
            "get_latest_request_for_queue_item",
        ):
            monkeypatch.setattr(f"app.repos.build_repo.{name}", getattr(self, name))

    # ── project_repo ──────────────────────────────────────────

    async def get_project(self, project_id):
        return copy.deepcopy(self.projects.get(project_id))

    async def get_layer(self, layer_id):
        return copy.deepcopy(self.layers.get(layer_id))

    async def get_user(self, user_id):
        return copy.deepcopy(self.users.get(user_id))

    # ── queue_repo ────────────────────────────────────────────

    async def create_queue_item(self, project_id, layer_id, *, requester_id=None,
                                req_method="manual", priority=0, scm_override=None,
                                build_override=None, max_retries=3):
        row = {
            "id": uuid4(), "project_id": project_id, "layer_id": layer_id,
            "requester_id": requester_id, "req_method": req_method, "status": "waiting",
            "priority": priority, "scm_override": scm_override,
            "build_override": build_override, "retry_count": 0,
            "max_retries": max_retries, "last_error": None, "build_id": None,
            "queued_at": self.now(), "processed_at": None, "completed_at": None,
        }
        self.queue[row["id"]] = row
        return copy.deepcopy(row)

    async def get_queue_item(self, queue_id):
        return copy.deepcopy(self.queue.get(queue_id))

    def _ordered_queue(self, status=None):
        items = [q for q in self.queue.values() if status is None or q["status"] == status]
        return sorted(items, key=lambda q: (-q["priority"], q["queued_at"]))

    async def list_queue_items(self, status=None, *, limit=200):
        return [copy.deepcopy(q) for q in self._ordered_queue(status)[:limit]]

    async def count_by_status(self, status):
        return sum(1 for q in self.queue.values() if q["status"] == status)

    async def get_waiting_items(self, limit):
        return [copy.deepcopy(q) for q in self._ordered_queue("waiting")[:limit]]

    def _transition(self, queue_id, expected, **changes):
        row = self.queue.get(queue_id)
        if row is None or row["status"] != expected:
            return None
        row.update(changes)
        return copy.deepcopy(row)

    async def mark_processing(self, queue_id):
        row = self._transition(queue_id, "waiting", status="processing", processed_at=self.now())
        processing = sum(1 for q in self.queue.values() if q["status"] == "processing")
        self.max_processing_seen = max(self.max_processing_seen, processing)
        return row

    async def mark_completed(self, queue_id, build_id=None):
        return self._transition(queue_id, "processing", status="completed",
                                completed_at=self.now(), build_id=build_id)

    async def record_dispatch_failure(self, queue_id, error):
        row = self.queue.get(queue_id)
        if row is None or row["status"] != "processing":
            return None
        retries = row["retry_count"] + 1
        return self._transition(
            queue_id, "processing",
            retry_count=retries,
            last_error=error,
            status="failed" if retries >= row["max_retries"] else "waiting",
        )

    async def cancel_queue_item(self, queue_id):
        return self._transition(queue_id, "waiting", status="cancelled", completed_at=self.now())

    async def update_priority(self, queue_id, priority):
        return self._transition(queue_id, "waiting", priority=priority)

    # ── build_repo ────────────────────────────────────────────

    async def create_build_with_stages(self, queue_item, *, plan_key, request_params,
                                       snapshot, stages, trigger_type, triggered_by):
        project_id = queue_item["project_id"]
        layer_id = queue_item["layer_id"]
        next_round = 1 + max(
            (b["round"] for b in self.builds.values() if b["layer_id"] == layer_id), default=0,
        )
        next_number = 1 + max(
            (b["build_number"] for b in self.builds.values() if b["project_id"] == project_id),
            default=0,
        )
        build_id = uuid4()
        request_id = uuid4()
        build = {
            "id": build_id, "project_id": project_id, "layer_id": layer_id,
            "queue_id": queue_item["id"], "build_request_id": request_id,
            "round": next_round, "build_number": next_number, "status": "pending",
            "trigger_type": trigger_type, "triggered_by": triggered_by,
            "external_key": None, "external_number": None,
            "snapshot": copy.deepcopy(snapshot), "artifacts": None,
            "quality_metrics": None, "release_criteria": None, "release_status": "none",
            "started_at": None, "finished_at": None, "duration_seconds": None,
            "created_at": self.now(),
        }
        self.builds[build_id] = build
        stage_rows = []
        for stage in stages:
            row = {
                "id": uuid4(), "build_id": build_id, "stage_name": stage["stage_name"],
                "stage_order": stage["stage_order"], "status": stage["status"],
                "error_count": 0, "warning_count": 0, "stage_result": None,
                "external_response": None, "log_url": None, "started_at": None,
                "finished_at": None, "duration_seconds": None,
            }
            self.stages[row["id"]] = row
            stage_rows.append(copy.deepcopy(row))
        request = {
            "id": request_id, "queue_id": queue_item["id"], "project_id": project_id,
            "layer_id": layer_id, "build_id": build_id, "plan_key": plan_key,
            "request_params": copy.deepcopy(request_params), "request_status": "sent",
            "external_key": None, "external_number": None, "error_message": None,
            "sent_at": self.now(), "responded_at": None,
        }
        self.requests[request_id] = request
        return {"build": copy.deepcopy(build), "stages": stage_rows, "request": copy.deepcopy(request)}

    async def get_build(self, build_id):
        return copy.deepcopy(self.builds.get(build_id))

    async def get_build_by_external_key(self, external_key):
        for build in self.builds.values():
            if build["external_key"] == external_key:
                return copy.deepcopy(build)
        return None

    async def get_active_builds(self, *, with_external_key=False):
        return [
            copy.deepcopy(b) for b in self.builds.values()
            if b["status"] in ("pending", "running")
            and (not with_external_key or b["external_key"] is not None)
        ]

    async def update_build(self, build_id, changes, *, only_if_active=False):
        build = self.builds.get(build_id)
        if build is None or (only_if_active and build["status"] in _TERMINAL_BUILD):
            return None
        build.update(copy.deepcopy(changes))
        return copy.deepcopy(build)

    async def get_stages(self, build_id):
        return self.stages_of(build_id)

    async def update_stage(self, stage_id, changes):
        stage = self.stages.get(stage_id)
        if not changes or stage is None or stage["status"] in _TERMINAL_STAGE:
            return None
        stage.update(copy.deepcopy(changes))
        return copy.deepcopy(stage)

    async def mark_request_accepted(self, request_id, external_key, external_number=None):
        request = self.requests.get(request_id)
        if request is None or request["request_status"] != "sent":
            return None
        request.update(request_status="accepted", external_key=external_key,
                       external_number=external_number, responded_at=self.now())
        return copy.deepcopy(request)

    async def mark_request_error(self, request_id, error):
        request = self.requests.get(request_id)
        if request is None or request["request_status"] != "sent":
            return None
        request.update(request_status="error", error_message=error, responded_at=self.now())
        return copy.deepcopy(request)

    async def get_timed_out_requests(self, cutoff):
        return [
            copy.deepcopy(r) for r in self.requests.values()
            if r["request_status"] == "sent" and r["sent_at"] < cutoff
        ]

    async def get_latest_request_for_queue_item(self, queue_id):
        rows = [r for r in self.requests.values() if r["queue_id"] == queue_id]
        return copy.deepcopy(max(rows, key=lambda r: r["sent_at"])) if rows else None


@pytest.fixture
def fake_store(monkeypatch) -> FakeStore:
    """A seeded in-memory store (one project, one layer, one user)."""
    store = FakeStore()
    store.add_user()
    store.add_project()
    store.add_layer()
    store.patch_repos(monkeypatch)
    return store


# ---------------------------------------------------------------------------
# Fake CI backend
# ---------------------------------------------------------------------------


class FakeCI:
    """Scripted CI backend.

    ``fail_triggers`` is the number of upcoming trigger calls that fail
    (``-1`` fails every call).  ``statuses`` maps result keys to the
    :class:`CIBuildStatus` returned by the status call.
    """

    def __init__(self) -> None:
        self.triggered: list[tuple[str, dict]] = []
        self.stopped: list[str] = []
        self.status_calls: list[str] = []
        self.statuses: dict[str, CIBuildStatus] = {}
        self.fail_triggers = 0
        self.fail_stop = False
        self._numbers = itertools.count(1)

    async def trigger_build(self, plan_key, variables=None):
        self.triggered.append((plan_key, dict(variables or {})))
        if self.fail_triggers:
            if self.fail_triggers > 0:
                self.fail_triggers -= 1
            raise CIClientError(
                f"CI backend returned HTTP 503 for POST /rest/api/latest/queue/{plan_key}",
                upstream_status=503,
            )
        number = next(self._numbers)
        return CITriggerResult(buildResultKey=f"{plan_key}-{number}", buildNumber=number)

    async def get_build_status(self, build_result_key):
        self.status_calls.append(build_result_key)
        if build_result_key not in self.statuses:
            raise CIClientError("CI backend returned HTTP 404", upstream_status=404)
        return self.statuses[build_result_key]

    async def stop_build(self, build_result_key):
        if self.fail_stop:
            raise CIClientError("CI backend unreachable")
        self.stopped.append(build_result_key)

    def set_status(self, key: str, *, life_cycle="InProgress", state="Unknown",
                   stages=None, passed=None, failed=None, artifacts=None) -> None:
        self.statuses[key] = CIBuildStatus.model_validate({
            "key": key,
            "state": state,
            "lifeCycleState": life_cycle,
            "buildState": state,
            "stages": {"stage": [{"name": n, "state": s} for n, s in (stages or [])]},
            "successfulTestCount": passed,
            "failedTestCount": failed,
            "artifacts": artifacts,
        })


@pytest.fixture
def fake_ci(monkeypatch) -> FakeCI:
    ci = FakeCI()
    monkeypatch.setattr("app.clients.ci_client.trigger_build", ci.trigger_build)
    monkeypatch.setattr("app.clients.ci_client.get_build_status", ci.get_build_status)
    monkeypatch.setattr("app.clients.ci_client.stop_build", ci.stop_build)
    return ci
