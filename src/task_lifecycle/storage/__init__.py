"""Storage backends and models."""

from task_lifecycle.storage.base import TaskStore
from task_lifecycle.storage.memory import InMemoryTaskStore
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
from task_lifecycle.storage.postgres import PostgresTaskStore

__all__ = [
    "ChangeResult",
    "InMemoryTaskStore",
    "NewStep",
    "PostgresTaskStore",
    "StepRecord",
    "StepUpdate",
    "TaskRecord",
    "TaskStatus",
    "TaskStore",
    "TaskType",
    "TaskUpdate",
]
