from __future__ import annotations

import pytest

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError, NotFoundError
from task_lifecycle.storage.memory import InMemoryTaskStore
from task_lifecycle.storage.models import NewStep, TaskStatus, TaskType

OWNER = "user-1"


def _create(store: InMemoryTaskStore, **metadata):
    return store.create_task(
        owner_id=OWNER,
        title="Send contract",
        description="",
        task_type=TaskType.EMAIL,
        status=TaskStatus.PENDING,
        metadata={"currentStep": 1, **metadata},
    )


def test_update_status_and_metadata_writes_both(store: InMemoryTaskStore) -> None:
    task = _create(store, emailDraft="hello")

    updated = store.update_status_and_metadata(
        task.task_id,
        status=TaskStatus.IN_PROGRESS,
        metadata={**task.metadata, "emailDraft": "hello again"},
        expected_status=TaskStatus.PENDING,
        expected_updated_at=task.updated_at,
    )

    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.metadata["emailDraft"] == "hello again"
    assert updated.updated_at > task.updated_at
    assert store.get_task(task.task_id) == updated


def test_update_status_and_metadata_rejects_unexpected_status(store: InMemoryTaskStore) -> None:
    task = _create(store)

    with pytest.raises(ConflictError) as excinfo:
        store.update_status_and_metadata(
            task.task_id,
            status=TaskStatus.COMPLETED,
            metadata=task.metadata,
            expected_status=TaskStatus.WAITING_FOR_RESPONSE,
        )

    assert excinfo.value.expected_status == "WAITING_FOR_RESPONSE"
    assert store.get_task(task.task_id).status == TaskStatus.PENDING


def test_update_status_and_metadata_rejects_a_row_written_since_read(
    store: InMemoryTaskStore,
) -> None:
    task = _create(store)
    store.update_status_and_metadata(
        task.task_id,
        status=TaskStatus.PENDING,
        metadata={**task.metadata, "note": "first writer"},
    )

    with pytest.raises(ConflictError, match="modified since it was read"):
        store.update_status_and_metadata(
            task.task_id,
            status=TaskStatus.PENDING,
            metadata={**task.metadata, "note": "second writer"},
            expected_status=TaskStatus.PENDING,
            expected_updated_at=task.updated_at,
        )
    assert store.get_task(task.task_id).metadata["note"] == "first writer"


def test_update_status_and_metadata_on_missing_task(store: InMemoryTaskStore) -> None:
    with pytest.raises(NotFoundError):
        store.update_status_and_metadata("missing", status=TaskStatus.FAILED, metadata={})


def test_add_step_counts_from_the_stored_row(store: InMemoryTaskStore) -> None:
    task = _create(store, waitingFor="signature", waitingSince="2024-05-01T09:00:00+00:00")

    store.add_step(task.task_id, NewStep(title="one"))
    created = store.add_step(task.task_id, NewStep(title="two"))

    refreshed = store.get_task(task.task_id)
    assert created.step_number == 2
    assert codec.get_total_steps(refreshed) == 2
    assert refreshed.metadata["waitingFor"] == "signature"
    assert refreshed.metadata["waitingSince"] == "2024-05-01T09:00:00+00:00"


def test_delete_step_returns_parent_with_recomputed_pointer(store: InMemoryTaskStore) -> None:
    task = _create(store)
    steps = [store.add_step(task.task_id, NewStep(title=str(n))) for n in range(1, 4)]
    store.update_status_and_metadata(
        task.task_id,
        status=TaskStatus.IN_PROGRESS,
        metadata=codec.set_current_step_number(store.get_task(task.task_id), 3),
    )

    parent = store.delete_step(steps[0].step_id)

    assert [step.title for step in parent.steps] == ["2", "3"]
    assert codec.get_total_steps(parent) == 2
    assert codec.get_current_step_number(parent) == 2
    assert parent.status == TaskStatus.IN_PROGRESS
    with pytest.raises(NotFoundError):
        store.delete_step(steps[0].step_id)
