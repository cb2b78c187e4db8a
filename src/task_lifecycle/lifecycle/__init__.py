"""Task state machine, manual lifecycle operations and the resumption scheduler."""

from task_lifecycle.lifecycle.engine import TransitionEngine, TransitionResult, utc_now
from task_lifecycle.lifecycle.scheduler import CycleReport, ResumptionScheduler
from task_lifecycle.lifecycle.service import TaskLifecycleService

__all__ = [
    "CycleReport",
    "ResumptionScheduler",
    "TaskLifecycleService",
    "TransitionEngine",
    "TransitionResult",
    "utc_now",
]
