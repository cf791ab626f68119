"""FastAPI application wiring for the task board.

Route handlers stay thin: they resolve the caller, validate the body, call the
lifecycle engine or stats service, and map rejections to HTTP status codes
(`not_found` -> 404, every other lifecycle rejection -> 409).

The acting agent is read from the `X-Agent-Id` header. Credential issuance and
verification live in front of this service.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import NoReturn

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from taskboard.config.settings import Settings, get_settings
from taskboard.models import (
    Activity,
    ActivityQuery,
    ActivityType,
    AgentSettings,
    ArchiveColumnRequest,
    BlockTaskRequest,
    ClaimTaskRequest,
    CompleteTaskRequest,
    CreateTaskRequest,
    HandoffTaskRequest,
    LifecycleResult,
    ModelInfo,
    RejectionKind,
    Task,
    TaskQuery,
    TaskStatus,
    UpdateAgentSettingsRequest,
    UpdateTaskRequest,
    utc_now,
)
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.services.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    NotificationEvent,
    NotificationSink,
    RecordingNotifier,
)
from taskboard.services.stats import (
    AgentUsageSummary,
    UsageStats,
    UsageStatsQuery,
    available_models,
    get_agent_usage_summary,
    get_usage_stats,
)
from taskboard.storage import StorageBundle, open_storage

logger = logging.getLogger(__name__)


class TaskEnvelope(BaseModel):
    task: Task


class TaskListResponse(BaseModel):
    tasks: list[Task]
    count: int


class HandoffResponse(BaseModel):
    completed_task: Task
    next_task: Task


class ArchiveColumnResponse(BaseModel):
    archived: int
    status: TaskStatus


class ReleaseResponse(BaseModel):
    released: int


class ActivityListResponse(BaseModel):
    activities: list[Activity]
    count: int
    total: int


class AgentSettingsListResponse(BaseModel):
    agents: list[AgentSettings]


class ModelListResponse(BaseModel):
    models: list[ModelInfo]


class EventListResponse(BaseModel):
    events: list[NotificationEvent] = Field(default_factory=list)


_REJECTION_STATUS: dict[RejectionKind, int] = {
    "not_found": 404,
    "invalid_state": 409,
    "not_authorized": 409,
    "conflict": 409,
}


def _raise_rejection(kind: RejectionKind | None, reason: str | None) -> NoReturn:
    raise HTTPException(
        status_code=_REJECTION_STATUS.get(kind or "conflict", 409),
        detail=reason or "Request rejected",
    )


def _task_or_raise(result: LifecycleResult) -> Task:
    if not result.success or result.task is None:
        _raise_rejection(result.error_kind, result.error)
    return result.task


def _require_agent(agent_id: str | None) -> str:
    if not agent_id or not agent_id.strip():
        raise HTTPException(status_code=401, detail="x-agent-id header required")
    return agent_id.strip()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _build_notifier(settings: Settings) -> tuple[NotificationSink, RecordingNotifier | None]:
    if settings.event_buffer_size <= 0:
        return LoggingNotifier(), None
    recorder = RecordingNotifier(max_events=settings.event_buffer_size)
    return CompositeNotifier(LoggingNotifier(), recorder), recorder


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: StorageBundle | None,
    clock: Callable[[], datetime],
) -> None:
    if hasattr(app.state, "lifecycle"):
        return
    if storage_override is None and not settings.database_url.strip():
        raise RuntimeError("Missing database URL. Set TASKBOARD_DATABASE_URL before starting the app.")
    storage = storage_override or open_storage(settings.database_url, clock=clock)
    storage.migrate()
    notifier, recorder = _build_notifier(settings)

    app.state.settings = settings
    app.state.storage = storage
    app.state.recorder = recorder
    app.state.clock = clock
    app.state.lifecycle = TaskLifecycle(storage.tasks, storage.activities, notifier, clock=clock)
    logger.info(
        "app_startup app_env=%s storage=%s", settings.app_env, type(storage.tasks).__name__
    )


def create_app(
    *,
    storage: StorageBundle | None = None,
    settings_override: Settings | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Application factory.

    Tests pass a ready StorageBundle (usually in-memory) so no database is
    opened; otherwise stores are built from settings when the app starts.
    """
    settings = settings_override or get_settings()
    _configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, storage_override=storage, clock=clock)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(app, settings=settings, storage_override=storage, clock=clock)

    def _lifecycle(request: Request) -> TaskLifecycle:
        if not hasattr(request.app.state, "lifecycle"):
            _ensure_runtime_state(
                request.app, settings=settings, storage_override=storage, clock=clock
            )
        return request.app.state.lifecycle

    def _storage(request: Request) -> StorageBundle:
        _lifecycle(request)
        return request.app.state.storage

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name, "timestamp": utc_now().isoformat()}

    # ---- tasks ----

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(
        request: Request,
        status: TaskStatus | None = None,
        skills: str | None = None,
        claimed_by: str | None = None,
        limit: int = Query(default=50, gt=0, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> TaskListResponse:
        query = TaskQuery(
            status=status,
            skills=skills,
            claimed_by=claimed_by,
            limit=limit,
            offset=offset,
        )
        tasks = _lifecycle(request).list_tasks(query)
        return TaskListResponse(tasks=tasks, count=len(tasks))

    @app.post("/tasks", response_model=TaskEnvelope, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> TaskEnvelope:
        created_by = _require_agent(x_agent_id)
        return TaskEnvelope(task=_lifecycle(request).create_task(payload, created_by=created_by))

    # Bulk routes are registered before /tasks/{task_id}/... so their paths win.
    @app.post("/tasks/archive-column", response_model=ArchiveColumnResponse)
    def archive_column(payload: ArchiveColumnRequest, request: Request) -> ArchiveColumnResponse:
        count = _lifecycle(request).archive_column(payload.status)
        return ArchiveColumnResponse(archived=count, status=payload.status)

    @app.post("/tasks/release-timed-out", response_model=ReleaseResponse)
    def release_timed_out(request: Request) -> ReleaseResponse:
        return ReleaseResponse(released=_lifecycle(request).release_timed_out_tasks())

    @app.get("/tasks/{task_id}", response_model=TaskEnvelope)
    def get_task(task_id: str, request: Request) -> TaskEnvelope:
        task = _lifecycle(request).get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return TaskEnvelope(task=task)

    @app.patch("/tasks/{task_id}", response_model=TaskEnvelope)
    def update_task(
        task_id: str,
        payload: UpdateTaskRequest,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> TaskEnvelope:
        result = _lifecycle(request).update_task(task_id, payload, actor_id=x_agent_id)
        return TaskEnvelope(task=_task_or_raise(result))

    @app.delete("/tasks/{task_id}", status_code=204)
    def delete_task(
        task_id: str,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> Response:
        result = _lifecycle(request).delete_task(task_id, actor_id=x_agent_id)
        _task_or_raise(result)
        return Response(status_code=204)

    @app.post("/tasks/{task_id}/claim", response_model=TaskEnvelope)
    def claim_task(task_id: str, payload: ClaimTaskRequest, request: Request) -> TaskEnvelope:
        result = _lifecycle(request).claim_task(task_id, payload.agent_id)
        return TaskEnvelope(task=_task_or_raise(result))

    @app.post("/tasks/{task_id}/complete", response_model=TaskEnvelope)
    def complete_task(
        task_id: str,
        payload: CompleteTaskRequest,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> TaskEnvelope:
        agent_id = _require_agent(x_agent_id)
        result = _lifecycle(request).complete_task(
            task_id, agent_id, output=payload.output, usage=payload.usage
        )
        return TaskEnvelope(task=_task_or_raise(result))

    @app.post("/tasks/{task_id}/block", response_model=TaskEnvelope)
    def block_task(
        task_id: str,
        payload: BlockTaskRequest,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> TaskEnvelope:
        agent_id = _require_agent(x_agent_id)
        result = _lifecycle(request).block_task(task_id, agent_id, payload.reason)
        return TaskEnvelope(task=_task_or_raise(result))

    @app.post("/tasks/{task_id}/handoff", response_model=HandoffResponse)
    def handoff_task(
        task_id: str,
        payload: HandoffTaskRequest,
        request: Request,
        x_agent_id: str | None = Header(default=None),
    ) -> HandoffResponse:
        agent_id = _require_agent(x_agent_id)
        result = _lifecycle(request).handoff_task(
            task_id, agent_id, payload.output, payload.next_task
        )
        if not result.success or result.completed_task is None or result.next_task is None:
            _raise_rejection(result.error_kind, result.error)
        return HandoffResponse(completed_task=result.completed_task, next_task=result.next_task)

    # ---- activity feed ----

    @app.get("/activities", response_model=ActivityListResponse)
    def list_activities(
        request: Request,
        agent_id: str | None = None,
        task_id: str | None = None,
        type: ActivityType | None = None,
        since: datetime | None = None,
        limit: int = Query(default=50, gt=0, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> ActivityListResponse:
        query = ActivityQuery(
            agent_id=agent_id,
            task_id=task_id,
            type=type,
            since=since,
            limit=limit,
            offset=offset,
        )
        activities_log = _storage(request).activities
        activities = activities_log.list(query)
        return ActivityListResponse(
            activities=activities,
            count=len(activities),
            total=activities_log.count(query),
        )

    # ---- usage stats ----

    @app.get("/stats/usage", response_model=UsageStats)
    def usage_stats(
        request: Request,
        agent_id: str | None = None,
        from_: datetime | None = Query(default=None, alias="from"),
        to: datetime | None = None,
    ) -> UsageStats:
        query = UsageStatsQuery(agent_id=agent_id, from_=from_, to=to)
        return get_usage_stats(_storage(request).tasks, query)

    @app.get("/agents/{agent_id}/usage", response_model=AgentUsageSummary)
    def agent_usage(agent_id: str, request: Request) -> AgentUsageSummary:
        _lifecycle(request)
        return get_agent_usage_summary(
            request.app.state.storage.tasks, agent_id, now=request.app.state.clock()
        )

    # ---- agent settings ----

    @app.get("/settings/models", response_model=ModelListResponse)
    def list_models() -> ModelListResponse:
        return ModelListResponse(models=available_models())

    @app.get("/settings/agents", response_model=AgentSettingsListResponse)
    def list_agent_settings(request: Request) -> AgentSettingsListResponse:
        return AgentSettingsListResponse(agents=_storage(request).agent_settings.list_all())

    @app.get("/settings/agents/{agent_id}", response_model=AgentSettings)
    def get_agent_settings(agent_id: str, request: Request) -> AgentSettings:
        record = _storage(request).agent_settings.get(agent_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Agent settings not found")
        return record

    @app.put("/settings/agents/{agent_id}", response_model=AgentSettings)
    def upsert_agent_settings(
        agent_id: str, payload: UpdateAgentSettingsRequest, request: Request
    ) -> AgentSettings:
        return _storage(request).agent_settings.upsert(agent_id, payload)

    @app.delete("/settings/agents/{agent_id}", status_code=204)
    def delete_agent_settings(agent_id: str, request: Request) -> Response:
        if not _storage(request).agent_settings.delete(agent_id):
            raise HTTPException(status_code=404, detail="Agent settings not found")
        return Response(status_code=204)

    # ---- live updates (polling fallback for the push channel) ----

    @app.get("/events", response_model=EventListResponse)
    def list_events(request: Request, after: int = Query(default=0, ge=0)) -> EventListResponse:
        _lifecycle(request)
        recorder: RecordingNotifier | None = request.app.state.recorder
        if recorder is None:
            return EventListResponse()
        return EventListResponse(events=recorder.events(after=after))

    return app


# Module-level app for `uvicorn taskboard.api.main:app`.
app = create_app()
