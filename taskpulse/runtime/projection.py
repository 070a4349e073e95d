"""External representation of runs, tasks, steps, logs and run statistics.

Every boundary that returns one of these (HTTP routes, the event stream, CLI
scripts) goes through the functions below, so the field mapping lives in one
place.
"""

from __future__ import annotations

from typing import Any

from taskpulse.runtime.models import LogEntry, Run, RunDetail, RunStats, Step, TaskDefinition


def project_task(task: TaskDefinition) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "project": task.project,
        "name": task.name,
        "handler": task.handler,
        "description": task.description,
        "retry_limit": int(task.retry_limit),
        "timeout_ms": task.timeout_ms,
        "step_templates": [
            {"name": t.name, "avg_duration_ms": int(t.avg_duration_ms)} for t in task.step_templates
        ],
        "simulation": dict(task.simulation or {}),
        "created_at": float(task.created_at),
    }


def project_step(step: Step) -> dict[str, Any]:
    return {
        "step_id": step.step_id,
        "name": step.name,
        "type": step.type,
        "start_time": float(step.start_time),
        "end_time": float(step.end_time) if step.end_time is not None else None,
        "duration_ms": step.duration_ms,
        "status": step.status,
        "metadata": dict(step.metadata or {}),
    }


def project_log(entry: LogEntry) -> dict[str, Any]:
    return {
        "id": entry.log_id,
        "level": entry.level.value,
        "message": entry.message,
        "metadata": dict(entry.metadata or {}),
        "timestamp": float(entry.timestamp),
    }


def project_run(
    run: Run,
    *,
    attempt: int | None = None,
    original_run_id: str | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "run_id": run.run_id,
        "project": run.project,
        "task_id": run.task_id,
        "status": run.status.value,
        "triggered_by": run.triggered_by,
        "input": run.input,
        "output": run.output,
        "error": run.error,
        "created_at": float(run.created_at),
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "updated_at": float(run.updated_at),
        "duration_ms": run.duration_ms,
    }
    if attempt is not None:
        out["attempt"] = int(attempt)
    if original_run_id is not None:
        out["original_run_id"] = original_run_id
    return out


def project_run_detail(detail: RunDetail) -> dict[str, Any]:
    return {
        "run": project_run(detail.run, attempt=detail.attempt, original_run_id=detail.original_run_id),
        "task": project_task(detail.task),
        "steps": [project_step(s) for s in detail.steps],
        "logs": [project_log(entry) for entry in detail.logs],
    }


def project_status(run: Run) -> dict[str, Any]:
    return {"status": run.status.value, "duration_ms": run.duration_ms}


def project_stats(stats: RunStats) -> dict[str, Any]:
    return {
        "runs_by_status": {s.value: int(n) for s, n in stats.runs_by_status.items()},
        "runs_by_task": [
            {"task_id": t.task_id, "handler": t.handler, "name": t.name, "count": int(t.count)}
            for t in stats.top_tasks
        ],
        "runs_over_time": [{"date": day, "count": int(n)} for day, n in stats.daily_counts],
        "avg_duration_ms": stats.avg_duration_ms,
        "success_rate": stats.success_rate,
        "total_runs": int(stats.total_runs),
        "failed_runs_last_24h": int(stats.failed_last_24h),
        "generated_at": float(stats.generated_at),
    }
