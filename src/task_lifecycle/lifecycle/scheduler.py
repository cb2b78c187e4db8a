"""Background poller that resumes tasks whose wait deadline has passed."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from task_lifecycle import metadata as codec
from task_lifecycle.errors import ConflictError
from task_lifecycle.lifecycle.engine import Clock, TransitionEngine, utc_now
from task_lifecycle.storage.base import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 60.0


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    resumed: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "startedAt": codec.format_timestamp(self.started_at),
            "finishedAt": (
                codec.format_timestamp(self.finished_at) if self.finished_at else None
            ),
            "resumed": list(self.resumed),
            "conflicts": list(self.conflicts),
            "failed": list(self.failed),
        }


class ResumptionScheduler:
    """Self-rescheduling polling loop.

    The next cycle is scheduled only after the current one returns, and
    ``run_once`` holds a lock, so cycles never overlap, whether they come
    from the loop or from a manual trigger.
    """

    def __init__(
        self,
        store: TaskStore,
        engine: TransitionEngine,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        clock: Clock = utc_now,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.store = store
        self.engine = engine
        self.interval_s = interval_s
        self.clock = clock
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._last_check_time: datetime | None = None
        self._last_report: CycleReport | None = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, *, run_immediately: bool = True) -> bool:
        """Start the polling thread; returns False if it was already running."""
        with self._state_lock:
            if self.is_running:
                logger.info("scheduler event=start_skipped reason=already_running")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop,
                kwargs={"run_immediately": run_immediately},
                name="task-resumption-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info("scheduler event=started interval_s=%s", self.interval_s)
        return True

    def stop(self, timeout: float | None = 5.0) -> bool:
        """Signal the loop to exit and wait for it; returns False if it was not running."""
        with self._state_lock:
            thread = self._thread
            if thread is None or not thread.is_alive():
                logger.info("scheduler event=stop_skipped reason=not_running")
                return False
            self._stop_event.set()
        thread.join(timeout)
        with self._state_lock:
            self._thread = None
        logger.info("scheduler event=stopped")
        return True

    def status(self) -> dict[str, Any]:
        report = self._last_report
        return {
            "running": self.is_running,
            "intervalSeconds": self.interval_s,
            "lastCheckTime": (
                codec.format_timestamp(self._last_check_time) if self._last_check_time else None
            ),
            "lastResumedCount": len(report.resumed) if report else 0,
        }

    def run_once(self) -> CycleReport:
        """Run one cycle synchronously.

        Each task is resumed independently: a conflict means another writer
        already moved it (skipped), any other failure is logged and the task
        stays expired, so it is retried next cycle.
        """
        with self._cycle_lock:
            now = self.clock()
            self._last_check_time = now
            report = CycleReport(started_at=now)
            expired = self.store.find_waiting_expired(now)
            logger.info(
                "scheduler event=cycle_start now=%s expired=%s",
                now.isoformat(),
                len(expired),
            )

            for task in expired:
                try:
                    self.engine.resume(task.task_id, trigger="auto")
                except ConflictError as exc:
                    report.conflicts.append(task.task_id)
                    logger.info(
                        "scheduler event=resume_conflict task_id=%s detail=%s",
                        task.task_id,
                        exc,
                    )
                except Exception:  # noqa: BLE001
                    report.failed.append(task.task_id)
                    logger.exception("scheduler event=resume_failed task_id=%s", task.task_id)
                else:
                    report.resumed.append(task.task_id)

            report.finished_at = self.clock()
            self._last_report = report
            logger.info(
                "scheduler event=cycle_end resumed=%s conflicts=%s failed=%s",
                len(report.resumed),
                len(report.conflicts),
                len(report.failed),
            )
            return report

    def _loop(self, *, run_immediately: bool) -> None:
        if run_immediately:
            self._run_cycle_safely()
        while not self._stop_event.wait(self.interval_s):
            self._run_cycle_safely()

    def _run_cycle_safely(self) -> None:
        try:
            self.run_once()
        except Exception:  # noqa: BLE001
            logger.exception("scheduler event=cycle_failed")
