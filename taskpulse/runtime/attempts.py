"""Attempt accounting for repeated invocations of the same logical work.

Two runs belong to the same attempt group when they share a task and their
inputs serialize to the same canonical JSON (sorted keys, compact separators).
The attempt number of a run is its 1-based position in that group, counting
every member created at or before the run itself.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from taskpulse.runtime.errors import InputValidationError, InvalidStateError, RetryLimitExceededError
from taskpulse.runtime.models import Run, RunStatus, TaskDefinition


RETRYABLE_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.TIMED_OUT}
)


def normalize_input(payload: Any) -> dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InputValidationError(
            "Run input must be a JSON object.",
            details={"type": type(payload).__name__},
        )
    return payload


def canonical_input(payload: Any) -> str:
    obj = normalize_input(payload)
    try:
        text = json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), allow_nan=False)
        # Lone surrogates survive json.dumps but cannot be stored or hashed.
        text.encode("utf-8")
    except (TypeError, ValueError, UnicodeEncodeError) as e:
        raise InputValidationError(f"Run input is not serializable: {e}") from e
    return text


def input_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_input(payload).encode("utf-8")).hexdigest()


def _created_at(run: Run | dict[str, Any]) -> float:
    if isinstance(run, Run):
        return float(run.created_at)
    return float(run["created_at"])


def _input_of(run: Run | dict[str, Any]) -> Any:
    if isinstance(run, Run):
        return run.input
    return run.get("input")


def compute_attempt(
    task: TaskDefinition,
    runs_for_task: Iterable[Run | dict[str, Any]],
    input_payload: Any,
    as_of: float,
) -> int:
    """Count runs of `task` in the same attempt group created at or before `as_of`.

    Runs belonging to other tasks are ignored, so callers may pass an unfiltered
    history. The persisted path (`SQLiteStore.count_attempts`) answers the same
    question through an index instead of scanning.
    """
    target = canonical_input(input_payload)
    count = 0
    for run in runs_for_task:
        if isinstance(run, Run) and run.task_id != task.task_id:
            continue
        if _created_at(run) > as_of:
            continue
        if canonical_input(_input_of(run)) == target:
            count += 1
    return count


def can_retry(task: TaskDefinition, attempt: int, status: RunStatus) -> bool:
    # The first invocation is attempt 1, not a retry.
    return attempt < task.retry_limit + 1 and status in RETRYABLE_STATUSES


def check_retry(task: TaskDefinition, attempt: int, status: RunStatus) -> None:
    if status not in RETRYABLE_STATUSES:
        raise InvalidStateError(
            "Run cannot be retried in its current state.",
            details={"status": status.value},
        )
    if not can_retry(task, attempt, status):
        raise RetryLimitExceededError(
            "Retry limit exceeded.",
            details={"attempt": int(attempt), "retry_limit": int(task.retry_limit)},
        )

