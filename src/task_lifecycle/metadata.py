"""Codec for the reserved keys of task and step metadata documents.

Wait state, the step pointer, completion stamps and the append-only
histories all live inside one free-form JSON document per task/step. Every
read and write of those keys goes through this module; any other key is
collaborator data (``emailDraft``, ``potentialContacts``, ...) and is carried
through untouched.

All functions are pure: they take a metadata mapping (or a record exposing
``.metadata``) and return a new dict. Malformed values are read as absent.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

WAITING_FOR = "waitingFor"
WAITING_SINCE = "waitingSince"
RESUME_AFTER = "resumeAfter"
RESPONSES = "responses"
STATUS_HISTORY = "statusHistory"
CURRENT_STEP = "currentStep"
TOTAL_STEPS = "totalSteps"
COMPLETED_AT = "completedAt"
PARENT_TASK_ID = "parentTaskId"

AUTO_RESUMED = "autoResumed"
AUTO_RESUME_TIME = "autoResumeTime"
MANUALLY_RESUMED = "manuallyResumed"
MANUAL_RESUME_TIME = "manualResumeTime"
USER_RESPONSE = "userResponse"
WAITED_FOR = "waitedFor"

WAIT_KEYS = (WAITING_FOR, WAITING_SINCE, RESUME_AFTER)


@dataclass(frozen=True)
class WaitState:
    waiting_for: str | None = None
    waiting_since: datetime | None = None
    resume_after: datetime | None = None

    @property
    def is_waiting(self) -> bool:
        return bool(self.waiting_for)

    def expired(self, now: datetime) -> bool:
        """True only when a deadline exists and has passed; no deadline never expires."""
        return self.resume_after is not None and self.resume_after <= now


NOT_WAITING = WaitState()


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_timestamp(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            parsed = datetime.fromisoformat(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def document(source: Any) -> dict[str, Any]:
    """Return a shallow copy of a metadata document.

    Accepts a mapping, a record with a ``metadata`` attribute, or ``None``.
    """
    raw = getattr(source, "metadata", source)
    if isinstance(raw, Mapping):
        return dict(raw)
    return {}


def read_wait_state(source: Any) -> WaitState:
    metadata = document(source)
    waiting_for = metadata.get(WAITING_FOR)
    if not isinstance(waiting_for, str) or not waiting_for.strip():
        return NOT_WAITING
    return WaitState(
        waiting_for=waiting_for,
        waiting_since=parse_timestamp(metadata.get(WAITING_SINCE)),
        resume_after=parse_timestamp(metadata.get(RESUME_AFTER)),
    )


def write_wait_state(
    source: Any,
    waiting_for: str,
    duration_minutes: float | None = None,
    *,
    now: datetime,
) -> dict[str, Any]:
    metadata = document(source)
    metadata[WAITING_FOR] = waiting_for
    metadata[WAITING_SINCE] = format_timestamp(now)
    if duration_minutes is not None:
        metadata[RESUME_AFTER] = format_timestamp(now + timedelta(minutes=duration_minutes))
    else:
        metadata.pop(RESUME_AFTER, None)
    return metadata


def copy_wait_state(source: Any, wait: WaitState) -> dict[str, Any]:
    """Overwrite the wait fields of ``source`` with ``wait`` (mirroring)."""
    metadata = clear_wait_state(source)
    if not wait.is_waiting:
        return metadata
    metadata[WAITING_FOR] = wait.waiting_for
    if wait.waiting_since is not None:
        metadata[WAITING_SINCE] = format_timestamp(wait.waiting_since)
    if wait.resume_after is not None:
        metadata[RESUME_AFTER] = format_timestamp(wait.resume_after)
    return metadata


def clear_wait_state(source: Any) -> dict[str, Any]:
    metadata = document(source)
    for key in WAIT_KEYS:
        metadata.pop(key, None)
    return metadata


def _history(metadata: Mapping[str, Any], key: str) -> list[Any]:
    existing = metadata.get(key)
    return list(existing) if isinstance(existing, list) else []


def read_responses(source: Any) -> list[Any]:
    return _history(document(source), RESPONSES)


def append_response(
    source: Any,
    response: Any,
    *,
    previous_status: str,
    new_status: str,
    now: datetime,
) -> dict[str, Any]:
    metadata = document(source)
    entries = _history(metadata, RESPONSES)
    entries.append(
        {
            "timestamp": format_timestamp(now),
            "response": response,
            "previousStatus": str(previous_status),
            "newStatus": str(new_status),
        }
    )
    metadata[RESPONSES] = entries
    return metadata


def read_status_history(source: Any) -> list[Any]:
    return _history(document(source), STATUS_HISTORY)


def append_status_history(
    source: Any,
    *,
    previous_status: str,
    new_status: str,
    now: datetime,
) -> dict[str, Any]:
    metadata = document(source)
    entries = _history(metadata, STATUS_HISTORY)
    entries.append(
        {
            "timestamp": format_timestamp(now),
            "previousStatus": str(previous_status),
            "newStatus": str(new_status),
        }
    )
    metadata[STATUS_HISTORY] = entries
    return metadata


def _positive_int(raw: Any) -> int | None:
    # bool is an int subclass; JSON true must not read as step 1
    if isinstance(raw, bool):
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if isinstance(raw, int) and raw >= 1:
        return raw
    return None


def get_current_step_number(source: Any) -> int:
    return _positive_int(document(source).get(CURRENT_STEP)) or 1


def set_current_step_number(source: Any, step_number: int) -> dict[str, Any]:
    metadata = document(source)
    metadata[CURRENT_STEP] = int(step_number)
    return metadata


def get_total_steps(source: Any) -> int:
    raw = document(source).get(TOTAL_STEPS)
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
        return raw
    return 0


def set_step_counts(source: Any, *, total_steps: int) -> dict[str, Any]:
    """Write ``totalSteps`` and clamp ``currentStep`` into ``[1, total_steps]``."""
    metadata = document(source)
    metadata[TOTAL_STEPS] = total_steps
    current = get_current_step_number(metadata)
    metadata[CURRENT_STEP] = min(current, total_steps) if total_steps > 0 else 1
    return metadata


def step_counts_after_delete(
    source: Any,
    deleted_step_number: int,
    *,
    total_steps: int,
) -> dict[str, Any]:
    """Recompute the step pointer after step ``deleted_step_number`` is removed.

    Steps after the deleted one shift down by one, so a pointer past it moves
    with them; a pointer at it stays on the same number unless that number no
    longer exists. ``total_steps`` is the step count before the deletion.
    """
    metadata = document(source)
    current = get_current_step_number(metadata)
    remaining = max(total_steps - 1, 0)
    if current > deleted_step_number:
        current -= 1
    elif current == deleted_step_number:
        current = min(deleted_step_number, remaining)
    metadata[TOTAL_STEPS] = remaining
    metadata[CURRENT_STEP] = max(current, 1)
    return metadata


def read_completed_at(source: Any) -> datetime | None:
    return parse_timestamp(document(source).get(COMPLETED_AT))


def mark_completed(source: Any, *, now: datetime) -> dict[str, Any]:
    """Stamp ``completedAt`` unless the caller already supplied one."""
    metadata = document(source)
    if read_completed_at(metadata) is None:
        metadata[COMPLETED_AT] = format_timestamp(now)
    return metadata


def clear_completed(source: Any) -> dict[str, Any]:
    metadata = document(source)
    metadata.pop(COMPLETED_AT, None)
    return metadata


def get_parent_task_id(source: Any) -> str | None:
    raw = document(source).get(PARENT_TASK_ID)
    return raw if isinstance(raw, str) and raw else None


def set_parent_task_id(source: Any, parent_task_id: str) -> dict[str, Any]:
    metadata = document(source)
    metadata[PARENT_TASK_ID] = parent_task_id
    return metadata


def mark_auto_resumed(source: Any, wait: WaitState, *, now: datetime) -> dict[str, Any]:
    metadata = document(source)
    metadata[AUTO_RESUMED] = True
    metadata[AUTO_RESUME_TIME] = format_timestamp(now)
    metadata[WAITED_FOR] = wait.waiting_for
    return metadata


def mark_manually_resumed(
    source: Any,
    wait: WaitState,
    *,
    response: Any,
    now: datetime,
) -> dict[str, Any]:
    metadata = document(source)
    metadata[MANUALLY_RESUMED] = True
    metadata[MANUAL_RESUME_TIME] = format_timestamp(now)
    metadata[USER_RESPONSE] = response
    metadata[WAITED_FOR] = wait.waiting_for
    return metadata
