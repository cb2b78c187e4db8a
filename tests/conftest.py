from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from task_lifecycle.lifecycle.engine import TransitionEngine
from task_lifecycle.lifecycle.scheduler import ResumptionScheduler
from task_lifecycle.lifecycle.service import TaskLifecycleService
from task_lifecycle.storage.memory import InMemoryTaskStore


class FrozenClock:
    """Manually advanced clock shared by engine, service and scheduler."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 5, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def engine(store: InMemoryTaskStore, clock: FrozenClock) -> TransitionEngine:
    return TransitionEngine(store, clock=clock)


@pytest.fixture
def service(store: InMemoryTaskStore, engine: TransitionEngine) -> TaskLifecycleService:
    return TaskLifecycleService(store, engine)


@pytest.fixture
def scheduler(
    store: InMemoryTaskStore, engine: TransitionEngine, clock: FrozenClock
) -> ResumptionScheduler:
    return ResumptionScheduler(store, engine, interval_s=60, clock=clock)
