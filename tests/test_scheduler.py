from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError, NotFoundError, PersistenceError
from task_lifecycle.lifecycle.engine import TransitionEngine
from task_lifecycle.lifecycle.scheduler import ResumptionScheduler
from task_lifecycle.lifecycle.service import TaskLifecycleService
from task_lifecycle.storage.memory import InMemoryTaskStore
from task_lifecycle.storage.models import NewStep, TaskStatus

OWNER = "user-1"


def _waiting_task(service: TaskLifecycleService, minutes: float | None = 60, label: str = "reply"):
    task = service.create_task(OWNER, f"Wait for {label}")
    return service.set_task_waiting(task.task_id, OWNER, label, minutes)


def test_cycle_resumes_expired_tasks_and_marks_them(
    service: TaskLifecycleService, scheduler: ResumptionScheduler, clock
) -> None:
    task = _waiting_task(service, 60, "client reply")
    clock.advance(minutes=61)

    report = scheduler.run_once()

    assert report.resumed == [task.task_id]
    resumed = service.get_task(task.task_id, OWNER)
    assert resumed.status == TaskStatus.IN_PROGRESS
    for key in codec.WAIT_KEYS:
        assert key not in resumed.metadata
    assert resumed.metadata["autoResumed"] is True
    assert resumed.metadata["autoResumeTime"] == clock.now.isoformat()
    assert resumed.metadata["waitedFor"] == "client reply"
    assert "manuallyResumed" not in resumed.metadata


def test_cycle_leaves_unexpired_and_deadline_free_tasks_alone(
    service: TaskLifecycleService, scheduler: ResumptionScheduler, clock
) -> None:
    later = _waiting_task(service, 120, "later")
    forever = _waiting_task(service, None, "manual only")
    clock.advance(minutes=61)

    report = scheduler.run_once()

    assert report.resumed == []
    assert service.get_task(later.task_id, OWNER).status == TaskStatus.WAITING_FOR_RESPONSE
    assert service.get_task(forever.task_id, OWNER).status == TaskStatus.WAITING_FOR_RESPONSE


def test_second_pass_finds_nothing(
    service: TaskLifecycleService,
    scheduler: ResumptionScheduler,
    store: InMemoryTaskStore,
    clock,
) -> None:
    for label in ("a", "b", "c"):
        _waiting_task(service, 5, label)
    clock.advance(minutes=10)

    first = scheduler.run_once()
    second = scheduler.run_once()

    assert len(first.resumed) == 3
    assert store.find_waiting_expired(clock.now) == []
    assert second.resumed == []


def test_cycle_resumes_the_waiting_step_too(
    service: TaskLifecycleService, scheduler: ResumptionScheduler, clock
) -> None:
    task = service.create_task(
        OWNER,
        "Schedule demo",
        steps=[NewStep(title="Propose slots"), NewStep(title="Confirm")],
    )
    service.set_task_waiting(task.task_id, OWNER, "slot choice", 30, task.steps[0].step_id)
    clock.advance(minutes=31)

    scheduler.run_once()

    steps = service.list_steps(task.task_id, OWNER)
    assert steps[0].status == TaskStatus.IN_PROGRESS
    assert steps[0].metadata["autoResumed"] is True
    assert codec.read_wait_state(steps[0]) == codec.NOT_WAITING
    assert codec.read_status_history(steps[0])[-1]["newStatus"] == "IN_PROGRESS"
    assert steps[1].status == TaskStatus.PENDING


def test_one_failing_task_does_not_abort_the_cycle(
    service: TaskLifecycleService,
    store: InMemoryTaskStore,
    engine: TransitionEngine,
    clock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    broken = _waiting_task(service, 5, "broken")
    healthy = _waiting_task(service, 5, "healthy")
    clock.advance(minutes=6)

    real_resume = engine.resume

    def flaky_resume(task_id: str, **kwargs):
        if task_id == broken.task_id:
            raise PersistenceError("connection reset")
        return real_resume(task_id, **kwargs)

    monkeypatch.setattr(engine, "resume", flaky_resume)
    scheduler = ResumptionScheduler(store, engine, clock=clock)

    report = scheduler.run_once()

    assert report.failed == [broken.task_id]
    assert report.resumed == [healthy.task_id]
    # the failed task stays expired and is retried next cycle
    assert [t.task_id for t in store.find_waiting_expired(clock.now)] == [broken.task_id]


def test_task_moved_between_scan_and_resume_is_a_conflict(
    service: TaskLifecycleService,
    store: InMemoryTaskStore,
    engine: TransitionEngine,
    clock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _waiting_task(service, 5)
    clock.advance(minutes=6)
    real_find = store.find_waiting_expired

    def find_then_complete(now):
        found = real_find(now)
        service.complete_task(task.task_id, OWNER, response="handled by hand")
        return found

    monkeypatch.setattr(store, "find_waiting_expired", find_then_complete)
    scheduler = ResumptionScheduler(store, engine, clock=clock)

    report = scheduler.run_once()

    assert report.conflicts == [task.task_id]
    final = service.get_task(task.task_id, OWNER)
    assert final.status == TaskStatus.COMPLETED
    assert "autoResumed" not in final.metadata


def test_task_waiting_again_between_scan_and_resume_keeps_new_deadline(
    service: TaskLifecycleService,
    store: InMemoryTaskStore,
    engine: TransitionEngine,
    clock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _waiting_task(service, 5)
    clock.advance(minutes=6)
    real_find = store.find_waiting_expired

    def find_then_wait_again(now):
        found = real_find(now)
        service.set_task_waiting(task.task_id, OWNER, "second reply", 120)
        return found

    monkeypatch.setattr(store, "find_waiting_expired", find_then_wait_again)
    scheduler = ResumptionScheduler(store, engine, clock=clock)

    report = scheduler.run_once()

    assert report.resumed == []
    assert report.conflicts == [task.task_id]
    final = service.get_task(task.task_id, OWNER)
    assert final.status == TaskStatus.WAITING_FOR_RESPONSE
    wait = codec.read_wait_state(final)
    assert wait.waiting_for == "second reply"
    assert wait.resume_after == clock.now + timedelta(minutes=120)
    assert "autoResumed" not in final.metadata


def test_task_rewritten_after_resume_read_is_a_conflict(
    service: TaskLifecycleService,
    store: InMemoryTaskStore,
    engine: TransitionEngine,
    clock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _waiting_task(service, 5)
    clock.advance(minutes=6)
    real_get = store.get_task

    def get_then_wait_again(task_id: str):
        found = real_get(task_id)
        service.set_task_waiting(task_id, OWNER, "second reply", 120)
        return found

    monkeypatch.setattr(store, "get_task", get_then_wait_again)
    scheduler = ResumptionScheduler(store, engine, clock=clock)

    report = scheduler.run_once()

    assert report.conflicts == [task.task_id]
    final = real_get(task.task_id)
    assert final.status == TaskStatus.WAITING_FOR_RESPONSE
    assert codec.read_wait_state(final).waiting_for == "second reply"
    assert "autoResumed" not in final.metadata


def test_manual_resume_and_cycle_race_produces_one_transition(
    service: TaskLifecycleService, scheduler: ResumptionScheduler, clock
) -> None:
    task = _waiting_task(service, 5)
    clock.advance(minutes=6)
    barrier = threading.Barrier(2)
    errors: list[Exception] = []

    def manual() -> None:
        barrier.wait()
        try:
            service.resume_task(task.task_id, OWNER, "I replied")
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    def automatic() -> None:
        barrier.wait()
        scheduler.run_once()

    threads = [threading.Thread(target=manual), threading.Thread(target=automatic)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    final = service.get_task(task.task_id, OWNER)
    assert final.status == TaskStatus.IN_PROGRESS
    markers = [final.metadata.get("autoResumed"), final.metadata.get("manuallyResumed")]
    assert markers.count(True) == 1
    report = scheduler.status()
    if final.metadata.get("manuallyResumed"):
        assert errors == []
        assert report["lastResumedCount"] == 0
    else:
        assert len(errors) == 1
        assert isinstance(errors[0], (ConflictError, NotFoundError))
        assert report["lastResumedCount"] == 1


def test_status_reports_last_cycle(
    service: TaskLifecycleService, scheduler: ResumptionScheduler, clock
) -> None:
    assert scheduler.status() == {
        "running": False,
        "intervalSeconds": 60,
        "lastCheckTime": None,
        "lastResumedCount": 0,
    }
    _waiting_task(service, 1)
    clock.advance(minutes=2)

    report = scheduler.run_once()

    status = scheduler.status()
    assert status["lastCheckTime"] == clock.now.isoformat()
    assert status["lastResumedCount"] == 1
    assert report.as_dict()["resumed"] == report.resumed


def test_start_and_stop_background_loop(
    store: InMemoryTaskStore, engine: TransitionEngine
) -> None:
    scheduler = ResumptionScheduler(store, engine, interval_s=30)

    assert scheduler.start(run_immediately=True) is True
    assert scheduler.start() is False
    deadline = time.monotonic() + 2
    while scheduler.status()["lastCheckTime"] is None and time.monotonic() < deadline:
        time.sleep(0.01)

    assert scheduler.is_running is True
    assert scheduler.status()["lastCheckTime"] is not None
    assert scheduler.stop(timeout=2) is True
    assert scheduler.is_running is False
    assert scheduler.stop() is False


def test_interval_must_be_positive(store: InMemoryTaskStore, engine: TransitionEngine) -> None:
    with pytest.raises(ValueError):
        ResumptionScheduler(store, engine, interval_s=0)
