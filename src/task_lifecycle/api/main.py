"""FastAPI app entrypoint for the task lifecycle service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from task_lifecycle.api.schemas import (
    CompleteTaskRequest,
    CreateStepRequest,
    CreateTaskRequest,
    ResumeTaskRequest,
    SetWaitingRequest,
    StateTransitionRequest,
    StepListResponse,
    TaskListResponse,
    TransitionResponse,
)
from task_lifecycle.config.log import configure_logging
from task_lifecycle.config.settings import Settings, get_settings
from task_lifecycle.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from task_lifecycle.lifecycle.engine import Clock, TransitionEngine, utc_now
from task_lifecycle.lifecycle.scheduler import ResumptionScheduler
from task_lifecycle.lifecycle.service import TaskLifecycleService
from task_lifecycle.storage.base import TaskStore
from task_lifecycle.storage.models import StepRecord, TaskRecord, TaskType
from task_lifecycle.storage.postgres import PostgresTaskStore

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStore | None,
    clock: Clock,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set TASK_LIFECYCLE_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresTaskStore(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "service"):
        engine = TransitionEngine(app.state.storage, clock=clock)
        app.state.service = TaskLifecycleService(app.state.storage, engine)
        app.state.scheduler = ResumptionScheduler(
            app.state.storage,
            engine,
            interval_s=settings.scheduler_interval_s,
            clock=clock,
        )


def create_app(
    *,
    storage: TaskStore | None = None,
    settings_override: Settings | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            clock=clock,
        )
        if settings.scheduler_enabled:
            app.state.scheduler.start(run_immediately=settings.scheduler_run_on_start)
        try:
            yield
        finally:
            app.state.scheduler.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            clock=clock,
        )

    def _service(request: Request) -> TaskLifecycleService:
        if not hasattr(request.app.state, "service"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                clock=clock,
            )
        return request.app.state.service

    def _scheduler(request: Request) -> ResumptionScheduler:
        _service(request)
        return request.app.state.scheduler

    def _owner_id(x_user_id: str | None) -> str:
        # authentication happens upstream; the caller identity arrives as a header
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail="Unauthorized")
        return x_user_id.strip()

    @app.exception_handler(ValidationError)
    def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(NotFoundError)
    def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ConflictError)
    def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(PersistenceError)
    def _persistence(_: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("request event=persistence_error detail=%s", exc)
        return JSONResponse(status_code=500, content={"error": "Task store unavailable"})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=TaskRecord)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).create_task(
            _owner_id(x_user_id),
            payload.title,
            description=payload.description,
            task_type=payload.type,
            status=payload.status,
            metadata=payload.metadata,
            steps=[step.to_new_step() for step in payload.steps],
            waiting_for=payload.waiting_for,
            waiting_duration_minutes=payload.waiting_duration,
            parent_task_id=payload.parent_task_id,
        )

    @app.get("/tasks/waiting", response_model=TaskListResponse)
    def list_waiting_tasks(
        request: Request,
        waiting_for: str | None = Query(default=None, alias="waitingFor"),
        include_expired: bool = Query(default=False, alias="includeExpired"),
        x_user_id: str | None = Header(default=None),
    ) -> TaskListResponse:
        tasks = _service(request).list_waiting_tasks(
            _owner_id(x_user_id),
            waiting_for=waiting_for,
            include_expired=include_expired,
        )
        return TaskListResponse(tasks=tasks)

    @app.post("/tasks/waiting", response_model=TaskRecord)
    def resume_waiting_task(
        payload: ResumeTaskRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).resume_task(
            payload.task_id,
            _owner_id(x_user_id),
            payload.response,
            status=payload.status,
        )

    @app.get("/tasks/completed", response_model=TaskListResponse)
    def list_completed_tasks(
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
        task_type: TaskType | None = Query(default=None, alias="type"),
        x_user_id: str | None = Header(default=None),
    ) -> TaskListResponse:
        tasks = _service(request).list_completed_tasks(
            _owner_id(x_user_id),
            limit=limit,
            task_type=task_type,
        )
        return TaskListResponse(tasks=tasks)

    @app.post("/tasks/state", response_model=TransitionResponse)
    def transition_task(
        payload: StateTransitionRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TransitionResponse:
        result = _service(request).transition(
            payload.task_id,
            _owner_id(x_user_id),
            payload.new_status,
            waiting_for=payload.waiting_for,
            waiting_duration_minutes=payload.waiting_duration,
            response=payload.response,
            step_id=payload.step_id,
            advance_to_next_step=payload.advance_to_next_step,
        )
        return TransitionResponse(task=result.task, updated_step=result.step)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).get_task(task_id, _owner_id(x_user_id))

    @app.delete("/tasks/{task_id}")
    def delete_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, bool]:
        _service(request).delete_task(task_id, _owner_id(x_user_id))
        return {"success": True}

    @app.post("/tasks/{task_id}/waiting", response_model=TaskRecord)
    def set_task_waiting(
        task_id: str,
        payload: SetWaitingRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).set_task_waiting(
            task_id,
            _owner_id(x_user_id),
            payload.waiting_for,
            payload.waiting_duration,
            payload.step_id,
        )

    @app.post("/tasks/{task_id}/complete", response_model=TaskRecord)
    def complete_task(
        task_id: str,
        payload: CompleteTaskRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).complete_task(
            task_id,
            _owner_id(x_user_id),
            payload.step_id,
            payload.advance_to_next_step,
            response=payload.response,
        )

    @app.get("/tasks/{task_id}/steps", response_model=StepListResponse)
    def list_steps(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> StepListResponse:
        steps = _service(request).list_steps(task_id, _owner_id(x_user_id))
        return StepListResponse(steps=steps)

    @app.post("/tasks/{task_id}/steps", response_model=StepRecord)
    def add_step(
        task_id: str,
        payload: CreateStepRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> StepRecord:
        return _service(request).add_step(task_id, _owner_id(x_user_id), payload.to_new_step())

    @app.delete("/tasks/{task_id}/steps/{step_id}", response_model=TaskRecord)
    def delete_step(
        task_id: str,
        step_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> TaskRecord:
        return _service(request).delete_step(task_id, _owner_id(x_user_id), step_id)

    @app.get("/scheduler/status")
    def scheduler_status(request: Request) -> dict[str, Any]:
        return _scheduler(request).status()

    @app.post("/scheduler/run")
    def scheduler_run(request: Request) -> dict[str, Any]:
        return _scheduler(request).run_once().as_dict()

    return app


app = create_app()
