from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def terminal(self) -> bool:
        return self not in {RunStatus.QUEUED, RunStatus.EXECUTING}


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


DEFAULT_STEP_NAME = "execute"
DEFAULT_STEP_AVG_MS = 5000


@dataclass(frozen=True)
class StepTemplate:
    name: str
    avg_duration_ms: int


@dataclass(frozen=True)
class TaskDefinition:
    """Read-only task definition as registered for a project."""

    task_id: str
    project: str
    name: str
    handler: str
    retry_limit: int = 0
    timeout_ms: int | None = None
    step_templates: tuple[StepTemplate, ...] = ()
    simulation: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    created_at: float = 0.0

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError(f"retry_limit must be >= 0, got {self.retry_limit}")
        if not self.step_templates:
            object.__setattr__(
                self,
                "step_templates",
                (StepTemplate(name=DEFAULT_STEP_NAME, avg_duration_ms=DEFAULT_STEP_AVG_MS),),
            )


@dataclass(frozen=True)
class Step:
    name: str
    type: str
    start_time: float
    end_time: float | None
    duration_ms: int | None
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    step_id: str = ""


@dataclass(frozen=True)
class LogEntry:
    level: LogLevel
    message: str
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)
    log_id: str = ""


@dataclass(frozen=True)
class Run:
    run_id: str
    project: str
    task_id: str
    status: RunStatus
    triggered_by: str
    input: dict[str, Any]
    output: dict[str, Any] | None
    error: str | None
    created_at: float
    started_at: float | None
    completed_at: float | None
    updated_at: float
    duration_ms: int | None


@dataclass(frozen=True)
class SimulatedRun:
    """A run plus its full timeline, ready to be persisted in one transaction."""

    task_id: str
    status: RunStatus
    triggered_by: str
    input: dict[str, Any]
    output: dict[str, Any] | None
    error: str | None
    created_at: float
    started_at: float | None
    completed_at: float | None
    duration_ms: int | None
    attempt: int
    steps: tuple[Step, ...]
    logs: tuple[LogEntry, ...]


@dataclass(frozen=True)
class RunDetail:
    run: Run
    task: TaskDefinition
    steps: tuple[Step, ...]
    logs: tuple[LogEntry, ...]
    attempt: int
    original_run_id: str | None = None


def duration_between(started_at: float | None, completed_at: float | None) -> int | None:
    if started_at is None or completed_at is None:
        return None
    return int(round((completed_at - started_at) * 1000))


@dataclass(frozen=True)
class TaskRunCount:
    task_id: str
    name: str | None
    handler: str | None
    count: int


@dataclass(frozen=True)
class RunStats:
    """Project-level run statistics as of `generated_at`."""

    runs_by_status: dict[RunStatus, int]
    top_tasks: tuple[TaskRunCount, ...]
    daily_counts: tuple[tuple[str, int], ...]
    avg_duration_ms: float | None
    total_runs: int
    failed_last_24h: int
    generated_at: float

    @property
    def success_rate(self) -> float:
        """Percentage of all runs that COMPLETED, rounded to two decimals."""
        if self.total_runs <= 0:
            return 0.0
        return round(self.runs_by_status.get(RunStatus.COMPLETED, 0) * 100.0 / self.total_runs, 2)
