"""State transition engine for tasks and their steps.

Every status change goes through ``TransitionEngine``. Each transition is
computed from a fresh read, validated before anything is written, and
persisted with one store call guarded by the status and ``updated_at`` that
were read, so a concurrent writer turns the second write into a
``ConflictError`` instead of a silent overwrite.

Side effects applied to the entity's metadata on every transition:

- into ``WAITING_FOR_RESPONSE``: ``waitingFor`` required, ``waitingSince``
  stamped, ``resumeAfter`` set only when a duration is given;
- into any other status: wait fields removed;
- into ``COMPLETED``: ``completedAt`` stamped unless already present;
  into anything else: ``completedAt`` removed;
- a supplied response is appended to ``responses``.

A step that is its task's current step drags the task along: the task takes
the same wait state (same ``waitingSince``), so task-level queries see
step-level waiting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from task_lifecycle import metadata as codec
from task_lifecycle.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from task_lifecycle.storage.base import TaskStore
from task_lifecycle.storage.models import (
    StepRecord,
    StepUpdate,
    TaskRecord,
    TaskStatus,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
ResumeTrigger = Literal["auto", "manual"]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TransitionResult:
    task: TaskRecord
    step: StepRecord | None = None


class TransitionEngine:
    def __init__(self, store: TaskStore, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    def load_task(self, task_id: str, owner_id: str) -> TaskRecord:
        """Owner-scoped read; both failure modes carry the same message."""
        task = self.store.find_by_id(task_id, owner_id)
        if task is not None:
            return task
        if self.store.get_task(task_id) is not None:
            raise AuthorizationError("Task not found")
        raise NotFoundError("Task not found")

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
        completed_at: datetime | None = None,
    ) -> TransitionResult:
        target = _coerce_status(new_status)
        _validate_wait_request(target, waiting_for, waiting_duration_minutes)
        task = self.load_task(task_id, owner_id)
        now = self.clock()

        if step_id is None:
            metadata = _apply_side_effects(
                task.metadata,
                previous=task.status,
                target=target,
                waiting_for=waiting_for,
                duration=waiting_duration_minutes,
                response=response,
                completed_at=completed_at,
                now=now,
            )
            update = _task_update(task, target, metadata)
            updated = self.store.update_status_and_metadata(
                update.task_id,
                status=update.status,
                metadata=update.metadata,
                completed_at=update.completed_at,
                expected_status=update.expected_status,
                expected_updated_at=update.expected_updated_at,
            )
            logger.info(
                "task_transition event=applied task_id=%s previous=%s status=%s",
                task.task_id,
                task.status.value,
                target.value,
            )
            return TransitionResult(task=updated)

        step = _find_step(task, step_id)
        step_metadata = _apply_side_effects(
            step.metadata,
            previous=step.status,
            target=target,
            waiting_for=waiting_for,
            duration=waiting_duration_minutes,
            response=response,
            completed_at=completed_at,
            now=now,
        )
        step_metadata = codec.append_status_history(
            step_metadata,
            previous_status=step.status,
            new_status=target,
            now=now,
        )
        step_update = StepUpdate(
            step_id=step.step_id,
            status=target,
            metadata=step_metadata,
            expected_status=step.status,
            expected_updated_at=step.updated_at,
        )
        task_update = self._parent_update(
            task,
            step,
            target,
            step_metadata=step_metadata,
            response=response,
            advance=advance_to_next_step,
            now=now,
        )
        result = self.store.apply_changes(task=task_update, steps=[step_update])
        updated_task = result.task or self.load_task(task_id, owner_id)
        logger.info(
            "step_transition event=applied task_id=%s step_number=%s previous=%s status=%s "
            "task_status=%s current_step=%s",
            task.task_id,
            step.step_number,
            step.status.value,
            target.value,
            updated_task.status.value,
            codec.get_current_step_number(updated_task),
        )
        return TransitionResult(task=updated_task, step=result.steps[0])

    def resume(
        self,
        task_id: str,
        *,
        trigger: ResumeTrigger,
        owner_id: str | None = None,
        response: Any = None,
        target_status: TaskStatus = TaskStatus.IN_PROGRESS,
    ) -> TaskRecord:
        """Move a waiting task (and its waiting step) out of the wait.

        Re-reads the task so metadata written since the caller's read survives.
        Raises ``ConflictError`` if the task is no longer waiting, if an
        automatic resume finds the deadline moved into the future, or if the
        task is written again before this write lands.
        """
        if target_status == TaskStatus.WAITING_FOR_RESPONSE:
            raise ValidationError("Cannot resume a task into WAITING_FOR_RESPONSE")
        if owner_id is None:
            task = self.store.get_task(task_id)
            if task is None:
                raise NotFoundError("Task not found")
        else:
            task = self.load_task(task_id, owner_id)
        if task.status != TaskStatus.WAITING_FOR_RESPONSE:
            raise ConflictError(
                f"Task {task_id} is {task.status.value}, not waiting",
                expected_status=TaskStatus.WAITING_FOR_RESPONSE.value,
            )

        now = self.clock()
        if trigger == "auto" and not codec.read_wait_state(task).expired(now):
            raise ConflictError(
                f"Task {task_id} has not reached its resume deadline",
                expected_status=TaskStatus.WAITING_FOR_RESPONSE.value,
            )
        metadata = self._resumed_metadata(
            task.metadata,
            previous=task.status,
            target=target_status,
            trigger=trigger,
            response=response,
            now=now,
        )
        step_updates: list[StepUpdate] = []
        step = _waiting_step(task)
        if step is not None:
            step_metadata = self._resumed_metadata(
                step.metadata,
                previous=step.status,
                target=target_status,
                trigger=trigger,
                response=response,
                now=now,
            )
            step_metadata = codec.append_status_history(
                step_metadata,
                previous_status=step.status,
                new_status=target_status,
                now=now,
            )
            step_updates.append(
                StepUpdate(
                    step_id=step.step_id,
                    status=target_status,
                    metadata=step_metadata,
                    expected_status=TaskStatus.WAITING_FOR_RESPONSE,
                    expected_updated_at=step.updated_at,
                )
            )

        result = self.store.apply_changes(
            task=_task_update(task, target_status, metadata),
            steps=step_updates,
        )
        updated = _require_task(result.task, task.task_id)
        logger.info(
            "task_resume event=resumed task_id=%s trigger=%s status=%s waited_for=%r",
            task.task_id,
            trigger,
            target_status.value,
            codec.read_wait_state(task).waiting_for,
        )
        return updated

    def _resumed_metadata(
        self,
        source: dict[str, Any],
        *,
        previous: TaskStatus,
        target: TaskStatus,
        trigger: ResumeTrigger,
        response: Any,
        now: datetime,
    ) -> dict[str, Any]:
        wait = codec.read_wait_state(source)
        metadata = _apply_side_effects(
            source,
            previous=previous,
            target=target,
            waiting_for=None,
            duration=None,
            response=response,
            completed_at=None,
            now=now,
        )
        if trigger == "auto":
            return codec.mark_auto_resumed(metadata, wait, now=now)
        return codec.mark_manually_resumed(metadata, wait, response=response, now=now)

    def _parent_update(
        self,
        task: TaskRecord,
        step: StepRecord,
        target: TaskStatus,
        *,
        step_metadata: dict[str, Any],
        response: Any,
        advance: bool,
        now: datetime,
    ) -> TaskUpdate | None:
        if target == TaskStatus.COMPLETED and advance:
            return self._advance_parent(task, step, response=response, now=now)
        if step.step_number != codec.get_current_step_number(task):
            return None

        # completing the current step without advancing leaves the task open
        parent_target = TaskStatus.IN_PROGRESS if target == TaskStatus.COMPLETED else target
        step_wait = codec.read_wait_state(step_metadata)
        metadata = _apply_side_effects(
            task.metadata,
            previous=task.status,
            target=parent_target,
            waiting_for=step_wait.waiting_for,
            duration=None,
            response=response,
            completed_at=None,
            now=now,
        )
        metadata = codec.copy_wait_state(metadata, step_wait)
        return _task_update(task, parent_target, metadata)

    def _advance_parent(
        self,
        task: TaskRecord,
        step: StepRecord,
        *,
        response: Any,
        now: datetime,
    ) -> TaskUpdate:
        next_step = next(
            (s for s in task.steps if s.step_number == step.step_number + 1),
            None,
        )
        if next_step is None:
            metadata = _apply_side_effects(
                task.metadata,
                previous=task.status,
                target=TaskStatus.COMPLETED,
                waiting_for=None,
                duration=None,
                response=response,
                completed_at=None,
                now=now,
            )
            return _task_update(task, TaskStatus.COMPLETED, metadata)

        next_wait = codec.read_wait_state(next_step)
        if next_step.status == TaskStatus.WAITING_FOR_RESPONSE and next_wait.is_waiting:
            parent_target = TaskStatus.WAITING_FOR_RESPONSE
        else:
            parent_target = TaskStatus.IN_PROGRESS
            next_wait = codec.NOT_WAITING

        metadata = codec.clear_completed(codec.copy_wait_state(task.metadata, next_wait))
        metadata = codec.set_current_step_number(metadata, next_step.step_number)
        if response is not None:
            metadata = codec.append_response(
                metadata,
                response,
                previous_status=task.status,
                new_status=parent_target,
                now=now,
            )
        return _task_update(task, parent_target, metadata)


def _coerce_status(raw: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(raw)
    except ValueError as exc:
        raise ValidationError(f"Unknown task status: {raw!r}") from exc


def _validate_wait_request(
    target: TaskStatus, waiting_for: str | None, duration: float | None
) -> None:
    if target != TaskStatus.WAITING_FOR_RESPONSE:
        return
    if not waiting_for or not waiting_for.strip():
        raise ValidationError(
            "waitingFor is required when setting status to WAITING_FOR_RESPONSE"
        )
    if duration is not None and duration < 0:
        raise ValidationError("waitingDuration must not be negative")


def _apply_side_effects(
    source: dict[str, Any],
    *,
    previous: TaskStatus,
    target: TaskStatus,
    waiting_for: str | None,
    duration: float | None,
    response: Any,
    completed_at: datetime | None,
    now: datetime,
) -> dict[str, Any]:
    if target == TaskStatus.WAITING_FOR_RESPONSE:
        if not waiting_for:
            raise ValidationError("waitingFor is required when waiting")
        metadata = codec.write_wait_state(source, waiting_for, duration, now=now)
    else:
        metadata = codec.clear_wait_state(source)

    if target == TaskStatus.COMPLETED:
        if completed_at is not None:
            metadata = codec.clear_completed(metadata)
        metadata = codec.mark_completed(metadata, now=completed_at or now)
    else:
        metadata = codec.clear_completed(metadata)

    if response is not None:
        metadata = codec.append_response(
            metadata,
            response,
            previous_status=previous,
            new_status=target,
            now=now,
        )
    return metadata


def _task_update(task: TaskRecord, target: TaskStatus, metadata: dict[str, Any]) -> TaskUpdate:
    completed_at = codec.read_completed_at(metadata) if target == TaskStatus.COMPLETED else None
    return TaskUpdate(
        task_id=task.task_id,
        status=target,
        metadata=metadata,
        completed_at=completed_at,
        expected_status=task.status,
        expected_updated_at=task.updated_at,
    )


def _require_task(task: TaskRecord | None, task_id: str) -> TaskRecord:
    if task is None:
        raise NotFoundError(f"Task {task_id} does not exist")
    return task


def _find_step(task: TaskRecord, step_id: str) -> StepRecord:
    for step in task.steps:
        if step.step_id == step_id:
            return step
    raise NotFoundError("Step not found")


def _waiting_step(task: TaskRecord) -> StepRecord | None:
    """The current step if it is waiting, else the first waiting step."""
    current = codec.get_current_step_number(task)
    waiting = [s for s in task.steps if s.status == TaskStatus.WAITING_FOR_RESPONSE]
    for step in waiting:
        if step.step_number == current:
            return step
    return waiting[0] if waiting else None
