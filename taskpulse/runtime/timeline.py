"""Deterministic run timeline simulation.

No worker executes task code: a run's steps and log lines are synthesized from
the task's step templates. Everything random is drawn from a PRNG seeded by
`(task_id, canonical input, attempt)`, so the same trigger always yields the
same timeline shifted to the invocation's wall-clock time, while a retry
(next attempt) gets a fresh draw.

Duration of a step: `avg_duration_ms * (1 + u)` rounded to the millisecond,
with `u` uniform in `[-jitter_pct, +jitter_pct]` (exact average when
`jitter_pct` is 0).

Outcome, evaluated step by step:
- a step that would end past the task timeout is cut there, the run is
  TIMED_OUT;
- attempts up to `flaky_attempts` fail on their last step;
- otherwise with probability `failure_rate` one step fails, never the first
  one when there is more than one;
- steps after a failure or timeout are recorded as skipped.
"""

from __future__ import annotations

import hashlib
import random
import time
from dataclasses import dataclass, replace
from typing import Any

from taskpulse.runtime.attempts import canonical_input, normalize_input
from taskpulse.runtime.models import (
    LogEntry,
    LogLevel,
    RunStatus,
    SimulatedRun,
    Step,
    TaskDefinition,
)


ERROR_MESSAGES: tuple[str, ...] = (
    "Connection timeout occurred",
    "Validation error: invalid input format",
    "External service unavailable",
    "Resource temporarily locked",
    "Rate limit exceeded",
)

PROGRESS_MESSAGES: tuple[str, ...] = (
    "Processing {step}: {pct}% complete",
    "{step}: validating input data",
    "{step}: connecting to external service",
    "{step}: processing batch {n} of {total}",
    "{step}: updating records",
)


@dataclass(frozen=True)
class SimulationPolicy:
    failure_rate: float = 0.1
    jitter_pct: float = 0.3
    flaky_attempts: int = 0
    start_delay_ms: int = 50

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.failure_rate) <= 1.0:
            raise ValueError(f"failure_rate must be in [0, 1], got {self.failure_rate!r}")
        if not 0.0 <= float(self.jitter_pct) < 1.0:
            raise ValueError(f"jitter_pct must be in [0, 1), got {self.jitter_pct!r}")
        if int(self.flaky_attempts) < 0:
            raise ValueError(f"flaky_attempts must be >= 0, got {self.flaky_attempts!r}")
        if int(self.start_delay_ms) < 0:
            raise ValueError(f"start_delay_ms must be >= 0, got {self.start_delay_ms!r}")

    def for_task(self, task: TaskDefinition) -> SimulationPolicy:
        """Apply the task's `simulation` overrides on top of this policy."""
        overrides = {
            k: v
            for k, v in (task.simulation or {}).items()
            if k in {"failure_rate", "jitter_pct", "flaky_attempts"} and v is not None
        }
        if not overrides:
            return self
        return replace(self, **overrides)


@dataclass(frozen=True)
class RetryOrigin:
    run_id: str
    status: RunStatus


def timeline_seed(task_id: str, input_payload: Any, attempt: int) -> int:
    raw = f"{task_id}|{canonical_input(input_payload)}|{int(attempt)}"
    return int(hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16], 16)


def step_duration_ms(avg_duration_ms: int, *, jitter_pct: float, rng: random.Random) -> int:
    avg = max(0, int(avg_duration_ms))
    if jitter_pct <= 0:
        return avg
    u = rng.uniform(-jitter_pct, jitter_pct)
    return max(0, int(round(avg * (1.0 + u))))


def choose_failing_step(policy: SimulationPolicy, *, attempt: int, n_steps: int, rng: random.Random) -> int | None:
    # Always consume the same draws so durations don't depend on the branch taken.
    draw = rng.random()
    index = rng.randrange(1, n_steps) if n_steps > 1 else 0
    if attempt <= policy.flaky_attempts:
        return n_steps - 1
    if draw < policy.failure_rate:
        return index
    return None


def _output_for(task: TaskDefinition, *, attempt: int, n_steps: int, executed_at: float, rng: random.Random) -> dict[str, Any]:
    output: dict[str, Any] = {
        "success": True,
        "executed_at": executed_at,
        "task_name": task.handler,
        "steps_completed": n_steps,
        "attempt": attempt,
        "processed_records": rng.randint(1, 1000),
    }
    handler = task.handler.lower()
    if "email" in handler:
        output.update({"emails_sent": rng.randint(1, 50), "bounce_rate": round(rng.random() * 0.05, 4)})
    elif "payment" in handler:
        output.update(
            {
                "transactions_processed": rng.randint(1, 200),
                "total_amount": rng.randint(1000, 101000),
                "currency": "USD",
            }
        )
    elif "report" in handler:
        output.update({"report_generated": True, "file_size": rng.randint(1000, 11000), "format": "PDF"})
    return output


def _ms(anchor: float, offset_ms: float) -> float:
    return anchor + offset_ms / 1000.0


def generate_timeline(
    task: TaskDefinition,
    input_payload: Any,
    mode: str = "manual",
    *,
    attempt: int = 1,
    now: float | None = None,
    started_at: float | None = None,
    origin: RetryOrigin | None = None,
    policy: SimulationPolicy | None = None,
    include_start_log: bool = True,
) -> SimulatedRun:
    """Simulate one invocation of `task` and return the run with its timeline.

    `now` is the creation time (read from the clock once when omitted).
    `started_at` anchors execution explicitly, as when a queued run that was
    started earlier completes; by default execution starts
    `policy.start_delay_ms` after creation.
    """
    created_at = float(now if now is not None else time.time())
    payload = dict(normalize_input(input_payload))
    pol = (policy or SimulationPolicy()).for_task(task)
    rng = random.Random(timeline_seed(task.task_id, payload, attempt))

    run_start = float(started_at) if started_at is not None else _ms(created_at, pol.start_delay_ms)
    templates = task.step_templates
    n_steps = len(templates)
    failing = choose_failing_step(pol, attempt=attempt, n_steps=n_steps, rng=rng)
    durations = [step_duration_ms(t.avg_duration_ms, jitter_pct=pol.jitter_pct, rng=rng) for t in templates]

    steps: list[Step] = []
    logs: list[LogEntry] = []

    if mode == "retry" and origin is not None:
        logs.append(
            LogEntry(
                level=LogLevel.INFO,
                message=f"Retrying run {origin.run_id}",
                timestamp=created_at,
                metadata={
                    "original_run_id": origin.run_id,
                    "original_status": origin.status.value,
                    "attempt": attempt,
                },
            )
        )
    if include_start_log:
        logs.append(
            LogEntry(
                level=LogLevel.INFO,
                message=f"Run started for task: {task.name}",
                timestamp=run_start,
                metadata={"task_name": task.handler, "triggered_by": mode, "attempt": attempt},
            )
        )

    status = RunStatus.COMPLETED
    error: str | None = None
    cursor_ms = 0
    halted = False

    for i, (tpl, duration) in enumerate(zip(templates, durations)):
        step_start = _ms(run_start, cursor_ms)
        base_meta: dict[str, Any] = {"step_index": i, "avg_duration_ms": int(tpl.avg_duration_ms)}

        if halted:
            steps.append(
                Step(
                    name=tpl.name,
                    type="step",
                    start_time=step_start,
                    end_time=step_start,
                    duration_ms=0,
                    status="skipped",
                    metadata=base_meta,
                )
            )
            continue

        logs.append(
            LogEntry(
                level=LogLevel.INFO,
                message=f"Starting {tpl.name}...",
                timestamp=step_start,
                metadata={"step_index": i, "step_name": tpl.name},
            )
        )

        timed_out = task.timeout_ms is not None and cursor_ms + duration > int(task.timeout_ms)
        actual = (int(task.timeout_ms) - cursor_ms) if timed_out else duration
        actual = max(0, actual)

        n_points = rng.randint(2, 4)
        for p in range(1, n_points):
            template = PROGRESS_MESSAGES[rng.randrange(len(PROGRESS_MESSAGES))]
            pct = int(p * 100 / n_points)
            logs.append(
                LogEntry(
                    level=LogLevel.DEBUG,
                    message=template.format(step=tpl.name, pct=pct, n=p, total=n_points),
                    timestamp=_ms(run_start, cursor_ms + actual * p / n_points),
                    metadata={"step_index": i, "step_name": tpl.name, "progress": pct},
                )
            )

        step_end = _ms(run_start, cursor_ms + actual)
        if timed_out:
            step_status = "timeout"
            status = RunStatus.TIMED_OUT
            error = f"Run exceeded timeout of {int(task.timeout_ms)}ms"
            logs.append(
                LogEntry(
                    level=LogLevel.ERROR,
                    message=f"Step '{tpl.name}' timed out after {int(task.timeout_ms)}ms",
                    timestamp=step_end,
                    metadata={"step_index": i, "step_name": tpl.name, "timeout_ms": int(task.timeout_ms)},
                )
            )
            halted = True
        elif i == failing:
            step_status = "error"
            reason = ERROR_MESSAGES[rng.randrange(len(ERROR_MESSAGES))]
            status = RunStatus.FAILED
            error = f"Step '{tpl.name}' failed: {reason}"
            logs.append(
                LogEntry(
                    level=LogLevel.ERROR,
                    message=error,
                    timestamp=step_end,
                    metadata={"step_index": i, "step_name": tpl.name, "error": reason},
                )
            )
            halted = True
        else:
            step_status = "success"
            logs.append(
                LogEntry(
                    level=LogLevel.INFO,
                    message=f"Completed {tpl.name} in {actual}ms",
                    timestamp=step_end,
                    metadata={"step_index": i, "step_name": tpl.name, "duration_ms": actual, "success": True},
                )
            )

        steps.append(
            Step(
                name=tpl.name,
                type="step",
                start_time=step_start,
                end_time=step_end,
                duration_ms=actual,
                status=step_status,
                metadata={**base_meta, "actual_duration_ms": actual},
            )
        )
        cursor_ms += actual

    total_ms = int(cursor_ms)
    completed_at = _ms(run_start, total_ms)

    output: dict[str, Any] | None = None
    if status == RunStatus.COMPLETED:
        output = _output_for(task, attempt=attempt, n_steps=n_steps, executed_at=completed_at, rng=rng)
        logs.append(
            LogEntry(
                level=LogLevel.INFO,
                message=f"Run completed successfully in {total_ms}ms",
                timestamp=completed_at,
                metadata={"status": status.value, "duration_ms": total_ms},
            )
        )
    else:
        verb = "timed out" if status == RunStatus.TIMED_OUT else "failed"
        logs.append(
            LogEntry(
                level=LogLevel.ERROR,
                message=f"Run {verb} after {total_ms}ms",
                timestamp=completed_at,
                metadata={"status": status.value, "duration_ms": total_ms, "error": error},
            )
        )

    return SimulatedRun(
        task_id=task.task_id,
        status=status,
        triggered_by=mode,
        input=payload,
        output=output,
        error=error,
        created_at=created_at,
        started_at=run_start,
        completed_at=completed_at,
        duration_ms=total_ms,
        attempt=int(attempt),
        steps=tuple(steps),
        logs=tuple(logs),
    )


def plan_queued_run(
    task: TaskDefinition,
    input_payload: Any,
    mode: str = "manual",
    *,
    attempt: int = 1,
    now: float | None = None,
) -> SimulatedRun:
    """A QUEUED run: pending steps at their projected offsets, one queued log."""
    created_at = float(now if now is not None else time.time())
    payload = dict(normalize_input(input_payload))

    steps: list[Step] = []
    cursor_ms = 0
    for i, tpl in enumerate(task.step_templates):
        steps.append(
            Step(
                name=tpl.name,
                type="step",
                start_time=_ms(created_at, cursor_ms),
                end_time=None,
                duration_ms=None,
                status="pending",
                metadata={"step_index": i, "avg_duration_ms": int(tpl.avg_duration_ms)},
            )
        )
        cursor_ms += max(0, int(tpl.avg_duration_ms))

    logs = (
        LogEntry(
            level=LogLevel.INFO,
            message=f"Run queued for task: {task.name}",
            timestamp=created_at,
            metadata={"task_name": task.handler, "triggered_by": mode, "status": RunStatus.QUEUED.value},
        ),
    )
    return SimulatedRun(
        task_id=task.task_id,
        status=RunStatus.QUEUED,
        triggered_by=mode,
        input=payload,
        output=None,
        error=None,
        created_at=created_at,
        started_at=None,
        completed_at=None,
        duration_ms=None,
        attempt=int(attempt),
        steps=tuple(steps),
        logs=logs,
    )
