"""Caller-facing task lifecycle operations.

Used by the agent's tool calls, webhook handlers and the HTTP routes. Every
operation is owner scoped; errors propagate untranslated.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from task_lifecycle import metadata as codec
from task_lifecycle.errors import NotFoundError, ValidationError
from task_lifecycle.lifecycle.engine import TransitionEngine, TransitionResult
from task_lifecycle.storage.base import TaskStore
from task_lifecycle.storage.models import (
    NewStep,
    StepRecord,
    TaskRecord,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)


class TaskLifecycleService:
    def __init__(self, store: TaskStore, engine: TransitionEngine) -> None:
        self.store = store
        self.engine = engine

    def create_task(
        self,
        owner_id: str,
        title: str,
        *,
        description: str = "",
        task_type: TaskType = TaskType.GENERAL,
        status: TaskStatus = TaskStatus.PENDING,
        metadata: dict[str, Any] | None = None,
        steps: Sequence[NewStep] = (),
        waiting_for: str | None = None,
        waiting_duration_minutes: float | None = None,
        parent_task_id: str | None = None,
    ) -> TaskRecord:
        """Create a task with its reserved metadata initialised.

        ``currentStep`` defaults to 1. A task created directly in
        ``WAITING_FOR_RESPONSE`` (e.g. contact disambiguation) needs
        ``waiting_for`` and is stamped like any other wait.
        """
        now = self.engine.clock()
        document = codec.document(metadata)
        document = codec.set_current_step_number(
            document, codec.get_current_step_number(document)
        )
        if steps:
            document = codec.set_step_counts(document, total_steps=len(steps))
        if parent_task_id:
            document = codec.set_parent_task_id(document, parent_task_id)

        if status == TaskStatus.WAITING_FOR_RESPONSE:
            if not waiting_for or not waiting_for.strip():
                raise ValidationError(
                    "waitingFor is required when creating a WAITING_FOR_RESPONSE task"
                )
            _check_duration(waiting_duration_minutes)
            document = codec.write_wait_state(
                document, waiting_for, waiting_duration_minutes, now=now
            )
        else:
            document = codec.clear_wait_state(document)
        if status == TaskStatus.COMPLETED:
            document = codec.mark_completed(document, now=now)

        prepared_steps = [self._prepare_step(step, now=now) for step in steps]
        task = self.store.create_task(
            owner_id=owner_id,
            title=title,
            description=description,
            task_type=task_type,
            status=status,
            metadata=document,
            steps=prepared_steps,
        )
        logger.info(
            "task_create event=created task_id=%s type=%s status=%s steps=%s",
            task.task_id,
            task.type.value,
            task.status.value,
            len(prepared_steps),
        )
        return task

    def get_task(self, task_id: str, owner_id: str) -> TaskRecord:
        return self.engine.load_task(task_id, owner_id)

    def list_steps(self, task_id: str, owner_id: str) -> list[StepRecord]:
        self.engine.load_task(task_id, owner_id)
        return self.store.list_steps(task_id)

    def add_step(
        self,
        task_id: str,
        owner_id: str,
        step: NewStep,
    ) -> StepRecord:
        self.engine.load_task(task_id, owner_id)
        prepared = self._prepare_step(step, now=self.engine.clock())
        return self.store.add_step(task_id, prepared)

    def delete_step(self, task_id: str, owner_id: str, step_id: str) -> TaskRecord:
        """Delete a step, closing the numbering gap and re-pointing ``currentStep``."""
        task = self.engine.load_task(task_id, owner_id)
        step = next((s for s in task.steps if s.step_id == step_id), None)
        if step is None:
            raise NotFoundError("Step not found")
        updated = self.store.delete_step(step_id)
        logger.info(
            "step_delete event=deleted task_id=%s step_number=%s current_step=%s",
            task_id,
            step.step_number,
            codec.get_current_step_number(updated),
        )
        return updated

    def delete_task(self, task_id: str, owner_id: str) -> None:
        self.engine.load_task(task_id, owner_id)
        self.store.delete_task(task_id)

    def transition(
        self,
        task_id: str,
        owner_id: str,
        new_status: TaskStatus | str,
        *,
        waiting_for: str | None = None,
        waiting_duration_minutes: float | None = None,
        response: Any = None,
        step_id: str | None = None,
        advance_to_next_step: bool = False,
    ) -> TransitionResult:
        return self.engine.transition(
            task_id,
            owner_id,
            new_status,
            waiting_for=waiting_for,
            waiting_duration_minutes=waiting_duration_minutes,
            response=response,
            step_id=step_id,
            advance_to_next_step=advance_to_next_step,
        )

    def resume_task(
        self,
        task_id: str,
        owner_id: str,
        response: Any = None,
        *,
        status: TaskStatus = TaskStatus.IN_PROGRESS,
    ) -> TaskRecord:
        """Resume a waiting task ahead of its deadline.

        A task that is not waiting is reported as not found. A resume that
        loses a race with the scheduler raises ``ConflictError``.
        """
        task = self.store.find_by_id(task_id, owner_id)
        if task is None or task.status != TaskStatus.WAITING_FOR_RESPONSE:
            raise NotFoundError("Waiting task not found")
        return self.engine.resume(
            task_id,
            trigger="manual",
            owner_id=owner_id,
            response=response,
            target_status=status,
        )

    def set_task_waiting(
        self,
        task_id: str,
        owner_id: str,
        waiting_for: str,
        waiting_duration_minutes: float | None = None,
        step_id: str | None = None,
    ) -> TaskRecord:
        return self.engine.transition(
            task_id,
            owner_id,
            TaskStatus.WAITING_FOR_RESPONSE,
            waiting_for=waiting_for,
            waiting_duration_minutes=waiting_duration_minutes,
            step_id=step_id,
        ).task

    def complete_task(
        self,
        task_id: str,
        owner_id: str,
        step_id: str | None = None,
        advance_to_next_step: bool = False,
        *,
        response: Any = None,
    ) -> TaskRecord:
        return self.engine.transition(
            task_id,
            owner_id,
            TaskStatus.COMPLETED,
            response=response,
            step_id=step_id,
            advance_to_next_step=advance_to_next_step,
        ).task

    def list_waiting_tasks(
        self,
        owner_id: str,
        *,
        waiting_for: str | None = None,
        include_expired: bool = False,
    ) -> list[TaskRecord]:
        """Owner's waiting tasks, oldest ``waitingSince`` first.

        ``include_expired`` narrows to tasks whose deadline has passed, i.e.
        what the next scheduler cycle will pick up.
        """
        return self.store.list_waiting(
            owner_id,
            waiting_for=waiting_for,
            expired_before=self.engine.clock() if include_expired else None,
        )

    def list_completed_tasks(
        self,
        owner_id: str,
        *,
        limit: int = 10,
        task_type: TaskType | None = None,
    ) -> list[TaskRecord]:
        return self.store.list_completed(owner_id, limit=limit, task_type=task_type)

    @staticmethod
    def _prepare_step(step: NewStep, *, now: datetime) -> NewStep:
        wait = codec.read_wait_state(step.metadata)
        if step.status != TaskStatus.WAITING_FOR_RESPONSE:
            document = codec.clear_wait_state(step.metadata)
        elif step.waiting_for and step.waiting_for.strip():
            _check_duration(step.waiting_duration_minutes)
            document = codec.write_wait_state(
                step.metadata, step.waiting_for, step.waiting_duration_minutes, now=now
            )
        elif wait.is_waiting:
            document = codec.copy_wait_state(
                step.metadata,
                codec.WaitState(
                    waiting_for=wait.waiting_for,
                    waiting_since=wait.waiting_since or now,
                    resume_after=wait.resume_after,
                ),
            )
        else:
            raise ValidationError(
                "waitingFor is required when creating a WAITING_FOR_RESPONSE step"
            )
        return NewStep(
            title=step.title,
            description=step.description,
            status=step.status,
            metadata=document,
        )


def _check_duration(minutes: float | None) -> None:
    if minutes is not None and minutes < 0:
        raise ValidationError("waitingDuration must not be negative")
