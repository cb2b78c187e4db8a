"""Storage models shared by the lifecycle core, API and persistence backends."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_FOR_RESPONSE = "WAITING_FOR_RESPONSE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskType(StrEnum):
    EMAIL = "EMAIL"
    CALENDAR = "CALENDAR"
    HUBSPOT = "HUBSPOT"
    GENERAL = "GENERAL"


class StepRecord(BaseModel):
    """Persisted step of a multi-step task."""

    step_id: str
    task_id: str
    step_number: int = Field(ge=1)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class TaskRecord(BaseModel):
    """Persisted task record.

    ``steps`` is populated by reads that include them; writes never use it.
    """

    task_id: str
    owner_id: str
    title: str
    description: str = ""
    type: TaskType = TaskType.GENERAL
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    steps: list[StepRecord] = Field(default_factory=list)


@dataclass(frozen=True)
class NewStep:
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] | None = None
    waiting_for: str | None = None
    waiting_duration_minutes: float | None = None


@dataclass(frozen=True)
class TaskUpdate:
    """Status and metadata written together for one task row.

    When ``expected_status`` is set the write only applies if the row still has
    that status; when ``expected_updated_at`` is set the row must not have been
    written since it was read. A failed guard raises ``ConflictError``.
    """

    task_id: str
    status: TaskStatus
    metadata: dict[str, Any]
    completed_at: datetime | None = None
    expected_status: TaskStatus | None = None
    expected_updated_at: datetime | None = None


@dataclass(frozen=True)
class StepUpdate:
    step_id: str
    status: TaskStatus
    metadata: dict[str, Any]
    expected_status: TaskStatus | None = None
    expected_updated_at: datetime | None = None


@dataclass(frozen=True)
class ChangeResult:
    task: TaskRecord | None
    steps: list[StepRecord]
