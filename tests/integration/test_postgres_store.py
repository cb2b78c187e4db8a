from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError, NotFoundError
from task_lifecycle.lifecycle.engine import TransitionEngine
from task_lifecycle.lifecycle.scheduler import ResumptionScheduler
from task_lifecycle.lifecycle.service import TaskLifecycleService
from task_lifecycle.storage.models import (
    NewStep,
    StepUpdate,
    TaskStatus,
    TaskType,
    TaskUpdate,
)
from task_lifecycle.storage.postgres import PostgresTaskStore

OWNER = "integration-user"


def _service(store: PostgresTaskStore, now: datetime) -> TaskLifecycleService:
    return TaskLifecycleService(store, TransitionEngine(store, clock=lambda: now))


def test_waiting_task_is_found_once_expired_and_resumed(pg_store: PostgresTaskStore) -> None:
    start = datetime.now(tz=UTC)
    service = _service(pg_store, start)
    task = service.create_task(OWNER, "Chase reply")
    service.set_task_waiting(task.task_id, OWNER, "client reply", 5)

    assert pg_store.find_waiting_expired(start) == []
    later = start + timedelta(minutes=6)
    expired = pg_store.find_waiting_expired(later)
    assert [t.task_id for t in expired] == [task.task_id]

    engine = TransitionEngine(pg_store, clock=lambda: later)
    report = ResumptionScheduler(pg_store, engine, clock=lambda: later).run_once()

    assert report.resumed == [task.task_id]
    resumed = pg_store.get_task(task.task_id)
    assert resumed is not None
    assert resumed.status == TaskStatus.IN_PROGRESS
    assert resumed.metadata["autoResumed"] is True
    assert pg_store.find_waiting_expired(later) == []


def test_conditional_update_rolls_back_whole_change(pg_store: PostgresTaskStore) -> None:
    service = _service(pg_store, datetime.now(tz=UTC))
    task = service.create_task(OWNER, "Two steps", steps=[NewStep(title="a"), NewStep(title="b")])

    with pytest.raises(ConflictError):
        pg_store.apply_changes(
            task=TaskUpdate(
                task_id=task.task_id,
                status=TaskStatus.IN_PROGRESS,
                metadata=task.metadata,
                expected_status=TaskStatus.PENDING,
            ),
            steps=[
                StepUpdate(
                    step_id=task.steps[0].step_id,
                    status=TaskStatus.COMPLETED,
                    metadata={},
                    expected_status=TaskStatus.FAILED,
                )
            ],
        )

    unchanged = pg_store.get_task(task.task_id)
    assert unchanged is not None
    assert unchanged.status == TaskStatus.PENDING
    assert unchanged.steps[0].status == TaskStatus.PENDING


def test_step_delete_renumbers_and_task_delete_cascades(pg_store: PostgresTaskStore) -> None:
    service = _service(pg_store, datetime.now(tz=UTC))
    task = service.create_task(
        OWNER,
        "Three steps",
        metadata={"currentStep": 3, "emailDraft": "keep me"},
        steps=[NewStep(title="1"), NewStep(title="2"), NewStep(title="3")],
    )

    updated = service.delete_step(task.task_id, OWNER, task.steps[1].step_id)

    assert [(s.step_number, s.title) for s in updated.steps] == [(1, "1"), (2, "3")]
    assert codec.get_current_step_number(updated) == 2
    assert updated.metadata["emailDraft"] == "keep me"

    service.delete_task(task.task_id, OWNER)
    assert pg_store.get_task(task.task_id) is None
    assert pg_store.list_steps(task.task_id) == []


def test_update_status_and_metadata_guards_status_and_version(
    pg_store: PostgresTaskStore,
) -> None:
    service = _service(pg_store, datetime.now(tz=UTC))
    task = service.create_task(OWNER, "Guarded")

    updated = pg_store.update_status_and_metadata(
        task.task_id,
        status=TaskStatus.IN_PROGRESS,
        metadata={**task.metadata, "note": "first"},
        expected_status=TaskStatus.PENDING,
        expected_updated_at=task.updated_at,
    )
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.updated_at > task.updated_at

    with pytest.raises(ConflictError):
        pg_store.update_status_and_metadata(
            task.task_id,
            status=TaskStatus.FAILED,
            metadata=task.metadata,
            expected_status=TaskStatus.PENDING,
        )
    with pytest.raises(ConflictError, match="modified since it was read"):
        pg_store.update_status_and_metadata(
            task.task_id,
            status=TaskStatus.FAILED,
            metadata=task.metadata,
            expected_status=TaskStatus.IN_PROGRESS,
            expected_updated_at=task.updated_at,
        )
    with pytest.raises(NotFoundError):
        pg_store.update_status_and_metadata("missing", status=TaskStatus.FAILED, metadata={})

    current = pg_store.get_task(task.task_id)
    assert current is not None
    assert current.status == TaskStatus.IN_PROGRESS
    assert current.metadata["note"] == "first"


def test_add_step_keeps_the_parent_wait_and_its_deadline(pg_store: PostgresTaskStore) -> None:
    start = datetime.now(tz=UTC)
    service = _service(pg_store, start)
    task = service.create_task(OWNER, "Wait then extend", steps=[NewStep(title="a")])
    service.set_task_waiting(task.task_id, OWNER, "client reply", 5)

    service.add_step(task.task_id, OWNER, NewStep(title="b"))
    service.delete_step(task.task_id, OWNER, task.steps[0].step_id)

    current = pg_store.get_task(task.task_id)
    assert current is not None
    assert current.status == TaskStatus.WAITING_FOR_RESPONSE
    assert codec.read_wait_state(current).waiting_for == "client reply"
    assert codec.get_total_steps(current) == 1
    later = start + timedelta(minutes=6)
    assert [t.task_id for t in pg_store.find_waiting_expired(later)] == [task.task_id]


def test_malformed_waiting_since_lists_last(pg_store: PostgresTaskStore) -> None:
    service = _service(pg_store, datetime.now(tz=UTC))
    malformed = pg_store.create_task(
        owner_id=OWNER,
        title="Imported",
        description="",
        task_type=TaskType.GENERAL,
        status=TaskStatus.WAITING_FOR_RESPONSE,
        metadata={"waitingFor": "reply", "waitingSince": "yesterday-ish"},
    )
    regular = service.create_task(OWNER, "Regular")
    service.set_task_waiting(regular.task_id, OWNER, "reply")

    listed = pg_store.list_waiting(OWNER)

    assert [t.task_id for t in listed] == [regular.task_id, malformed.task_id]
