"""Request/response schemas for the HTTP layer.

Request bodies accept camelCase keys (``taskId``, ``waitingFor``) as sent by
the web client, and snake_case for internal callers.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from task_lifecycle.storage.models import (
    NewStep,
    StepRecord,
    TaskRecord,
    TaskStatus,
    TaskType,
)


class RequestModel(BaseModel):
    """Base model for strict request validation."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CreateStepRequest(RequestModel):
    title: str = Field(min_length=1)
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    waiting_for: str | None = None
    waiting_duration: float | None = Field(default=None, ge=0)

    def to_new_step(self) -> NewStep:
        return NewStep(
            title=self.title,
            description=self.description,
            status=self.status,
            metadata=self.metadata,
            waiting_for=self.waiting_for,
            waiting_duration_minutes=self.waiting_duration,
        )


class CreateTaskRequest(RequestModel):
    title: str = Field(min_length=1)
    description: str = ""
    type: TaskType = TaskType.GENERAL
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    steps: list[CreateStepRequest] = Field(default_factory=list)
    waiting_for: str | None = None
    waiting_duration: float | None = Field(default=None, ge=0)
    parent_task_id: str | None = None


class StateTransitionRequest(RequestModel):
    task_id: str = Field(min_length=1)
    # Kept as a plain string so an unknown status reaches the engine and is
    # reported with the lifecycle's own validation message.
    new_status: str = Field(min_length=1)
    waiting_for: str | None = None
    waiting_duration: float | None = None
    response: Any = None
    step_id: str | None = None
    advance_to_next_step: bool = False


class ResumeTaskRequest(RequestModel):
    task_id: str = Field(min_length=1)
    response: Any = None
    status: TaskStatus = TaskStatus.IN_PROGRESS


class SetWaitingRequest(RequestModel):
    waiting_for: str = Field(min_length=1)
    waiting_duration: float | None = None
    step_id: str | None = None


class CompleteTaskRequest(RequestModel):
    step_id: str | None = None
    advance_to_next_step: bool = False
    response: Any = None


class TransitionResponse(BaseModel):
    task: TaskRecord
    updated_step: StepRecord | None = None


class TaskListResponse(BaseModel):
    tasks: list[TaskRecord]


class StepListResponse(BaseModel):
    steps: list[StepRecord]
