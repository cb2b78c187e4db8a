"""In-memory storage backend for tests and local development."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from copy import deepcopy
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError, NotFoundError
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


class InMemoryTaskStore:
    """Dict-backed store; every read returns a deep copy."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRecord] = {}
        self._steps: dict[str, StepRecord] = {}
        self._lock = threading.RLock()

    def migrate(self) -> None:
        return None

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
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            owner_id=owner_id,
            title=title,
            description=description,
            type=task_type,
            status=status,
            metadata=deepcopy(metadata),
            created_at=now,
            updated_at=now,
            completed_at=codec.read_completed_at(metadata),
        )
        with self._lock:
            self._tasks[record.task_id] = record
            for number, step in enumerate(steps, start=1):
                self._insert_step(record.task_id, number, step, now)
            return self._with_steps(record)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            record = self._tasks.get(task_id)
            return self._with_steps(record) if record else None

    def find_by_id(self, task_id: str, owner_id: str) -> TaskRecord | None:
        record = self.get_task(task_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def get_step(self, step_id: str) -> StepRecord | None:
        with self._lock:
            step = self._steps.get(step_id)
            return step.model_copy(deep=True) if step else None

    def list_steps(self, task_id: str) -> list[StepRecord]:
        with self._lock:
            steps = [step for step in self._steps.values() if step.task_id == task_id]
            steps.sort(key=lambda step: step.step_number)
            return [step.model_copy(deep=True) for step in steps]

    def find_waiting_expired(self, now: datetime) -> list[TaskRecord]:
        with self._lock:
            return [
                self._with_steps(record)
                for record in self._tasks.values()
                if record.status == TaskStatus.WAITING_FOR_RESPONSE
                and codec.read_wait_state(record).expired(now)
            ]

    def list_waiting(
        self,
        owner_id: str,
        *,
        waiting_for: str | None = None,
        expired_before: datetime | None = None,
    ) -> list[TaskRecord]:
        with self._lock:
            matches: list[TaskRecord] = []
            for record in self._tasks.values():
                if record.owner_id != owner_id:
                    continue
                if record.status != TaskStatus.WAITING_FOR_RESPONSE:
                    continue
                wait = codec.read_wait_state(record)
                if waiting_for is not None and wait.waiting_for != waiting_for:
                    continue
                if expired_before is not None and not wait.expired(expired_before):
                    continue
                matches.append(self._with_steps(record))

        # oldest wait first, most recently touched first among ties
        matches.sort(key=lambda record: record.updated_at, reverse=True)
        matches.sort(key=_waiting_since_sort_key)
        return matches

    def list_completed(
        self,
        owner_id: str,
        *,
        limit: int,
        task_type: TaskType | None = None,
    ) -> list[TaskRecord]:
        with self._lock:
            matches = [
                self._with_steps(record)
                for record in self._tasks.values()
                if record.owner_id == owner_id
                and record.status == TaskStatus.COMPLETED
                and (task_type is None or record.type == task_type)
            ]
        floor = datetime.min.replace(tzinfo=UTC)
        matches.sort(key=lambda record: record.completed_at or floor, reverse=True)
        return matches[:limit]

    def update_status_and_metadata(
        self,
        task_id: str,
        *,
        status: TaskStatus,
        metadata: dict[str, Any],
        completed_at: datetime | None = None,
        expected_status: TaskStatus | None = None,
        expected_updated_at: datetime | None = None,
    ) -> TaskRecord:
        result = self.apply_changes(
            task=TaskUpdate(
                task_id=task_id,
                status=status,
                metadata=metadata,
                completed_at=completed_at,
                expected_status=expected_status,
                expected_updated_at=expected_updated_at,
            )
        )
        if result.task is None:
            raise NotFoundError(f"Task {task_id} does not exist")
        return result.task

    def apply_changes(
        self,
        *,
        task: TaskUpdate | None = None,
        steps: Sequence[StepUpdate] = (),
    ) -> ChangeResult:
        with self._lock:
            # check every guard before touching anything
            if task is not None:
                current = self._tasks.get(task.task_id)
                if current is None:
                    raise NotFoundError(f"Task {task.task_id} does not exist")
                _check_expected("Task", task.task_id, current, task)
            for update in steps:
                current_step = self._steps.get(update.step_id)
                if current_step is None:
                    raise NotFoundError(f"Step {update.step_id} does not exist")
                _check_expected("Step", update.step_id, current_step, update)

            updated_task: TaskRecord | None = None
            if task is not None:
                previous = self._tasks[task.task_id]
                updated_task = previous.model_copy(
                    update={
                        "status": task.status,
                        "metadata": deepcopy(task.metadata),
                        "completed_at": task.completed_at,
                        "updated_at": _stamp_after(previous.updated_at),
                    },
                    deep=True,
                )
                self._tasks[task.task_id] = updated_task
            updated_steps: list[StepRecord] = []
            for update in steps:
                previous_step = self._steps[update.step_id]
                updated_step = previous_step.model_copy(
                    update={
                        "status": update.status,
                        "metadata": deepcopy(update.metadata),
                        "updated_at": _stamp_after(previous_step.updated_at),
                    },
                    deep=True,
                )
                self._steps[update.step_id] = updated_step
                updated_steps.append(updated_step.model_copy(deep=True))
            return ChangeResult(
                task=self._with_steps(updated_task) if updated_task else None,
                steps=updated_steps,
            )

    def add_step(self, task_id: str, step: NewStep) -> StepRecord:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"Task {task_id} does not exist")
            numbers = [s.step_number for s in self._steps.values() if s.task_id == task_id]
            now = _stamp_after(record.updated_at)
            created = self._insert_step(task_id, max(numbers, default=0) + 1, step, now)
            metadata = deepcopy(
                codec.set_step_counts(record.metadata, total_steps=len(numbers) + 1)
            )
            self._tasks[task_id] = record.model_copy(
                update={"metadata": metadata, "updated_at": now}, deep=True
            )
            return created.model_copy(deep=True)

    def delete_step(self, step_id: str) -> TaskRecord:
        with self._lock:
            removed = self._steps.pop(step_id, None)
            if removed is None:
                raise NotFoundError(f"Step {step_id} does not exist")
            parent = self._tasks.get(removed.task_id)
            if parent is None:
                raise NotFoundError(f"Task {removed.task_id} does not exist")
            now = _stamp_after(parent.updated_at)
            remaining = 0
            for other_id, other in list(self._steps.items()):
                if other.task_id != removed.task_id:
                    continue
                remaining += 1
                if other.step_number > removed.step_number:
                    self._steps[other_id] = other.model_copy(
                        update={"step_number": other.step_number - 1, "updated_at": now}
                    )
            metadata = deepcopy(
                codec.step_counts_after_delete(
                    parent.metadata, removed.step_number, total_steps=remaining + 1
                )
            )
            updated = parent.model_copy(update={"metadata": metadata, "updated_at": now}, deep=True)
            self._tasks[removed.task_id] = updated
            return self._with_steps(updated)

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                raise NotFoundError(f"Task {task_id} does not exist")
            for step_id in [s.step_id for s in self._steps.values() if s.task_id == task_id]:
                del self._steps[step_id]

    def _insert_step(
        self, task_id: str, step_number: int, step: NewStep, now: datetime
    ) -> StepRecord:
        created = StepRecord(
            step_id=str(uuid4()),
            task_id=task_id,
            step_number=step_number,
            title=step.title,
            description=step.description,
            status=step.status,
            metadata=deepcopy(step.metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._steps[created.step_id] = created
        return created

    def _with_steps(self, record: TaskRecord) -> TaskRecord:
        steps = [s for s in self._steps.values() if s.task_id == record.task_id]
        steps.sort(key=lambda step: step.step_number)
        return record.model_copy(
            update={"steps": [step.model_copy(deep=True) for step in steps]}, deep=True
        )


def _check_expected(
    kind: str,
    entity_id: str,
    current: TaskRecord | StepRecord,
    update: TaskUpdate | StepUpdate,
) -> None:
    expected = update.expected_status
    if expected is not None and current.status != expected:
        raise ConflictError(
            f"{kind} {entity_id} is {current.status.value}, expected {expected.value}",
            expected_status=expected.value,
        )
    if update.expected_updated_at is not None and current.updated_at != update.expected_updated_at:
        raise ConflictError(
            f"{kind} {entity_id} was modified since it was read",
            expected_status=expected.value if expected else None,
        )


def _stamp_after(previous: datetime) -> datetime:
    """Write timestamp that always moves ``updated_at`` forward."""
    now = datetime.now(UTC)
    if now > previous:
        return now
    return previous + timedelta(microseconds=1)


def _waiting_since_sort_key(record: TaskRecord) -> tuple[int, datetime]:
    since = codec.read_wait_state(record).waiting_since
    if since is None:
        return (1, datetime.min.replace(tzinfo=UTC))
    return (0, since)
