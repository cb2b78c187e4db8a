"""Storage interface for task lifecycle persistence."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from task_lifecycle.storage.models import (
    ChangeResult,
    NewStep,
    StepRecord,
    StepUpdate,
    TaskRecord,
    TaskStatus,
    TaskType,
    TaskUpdate,
)


class TaskStore(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        *,
        owner_id: str,
        title: str,
        description: str,
        task_type: TaskType,
        status: TaskStatus,
        metadata: dict[str, Any],
        steps: Sequence[NewStep] = (),
    ) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def find_by_id(self, task_id: str, owner_id: str) -> TaskRecord | None: ...

    def get_step(self, step_id: str) -> StepRecord | None: ...

    def list_steps(self, task_id: str) -> list[StepRecord]: ...

    def find_waiting_expired(self, now: datetime) -> list[TaskRecord]: ...

    def list_waiting(
        self,
        owner_id: str,
        *,
        waiting_for: str | None = None,
        expired_before: datetime | None = None,
    ) -> list[TaskRecord]: ...

    def list_completed(
        self,
        owner_id: str,
        *,
        limit: int,
        task_type: TaskType | None = None,
    ) -> list[TaskRecord]: ...

    def update_status_and_metadata(
        self,
        task_id: str,
        *,
        status: TaskStatus,
        metadata: dict[str, Any],
        completed_at: datetime | None = None,
        expected_status: TaskStatus | None = None,
        expected_updated_at: datetime | None = None,
    ) -> TaskRecord: ...

    def apply_changes(
        self,
        *,
        task: TaskUpdate | None = None,
        steps: Sequence[StepUpdate] = (),
    ) -> ChangeResult: ...

    def add_step(self, task_id: str, step: NewStep) -> StepRecord:
        """Append ``step`` and bump the parent's ``totalSteps``.

        The parent's counts are computed from the row as it stands inside the
        store's lock, so concurrent transitions of the parent are preserved.
        """
        ...

    def delete_step(self, step_id: str) -> TaskRecord:
        """Delete a step, close the numbering gap and return the parent."""
        ...

    def delete_task(self, task_id: str) -> None: ...
