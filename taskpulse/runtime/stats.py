"""Run statistics for a project dashboard."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

from taskpulse.runtime.models import RunStats, RunStatus, TaskRunCount
from taskpulse.storage.sqlite_store import SQLiteStore


DAY_S = 24 * 60 * 60
HISTORY_DAYS = 30
TOP_TASKS = 10


def _utc_day(ts: float) -> datetime:
    d = datetime.fromtimestamp(ts, tz=timezone.utc)
    return d.replace(hour=0, minute=0, second=0, microsecond=0)


def fill_daily_counts(counts: dict[str, int], *, start: float, end: float) -> tuple[tuple[str, int], ...]:
    """One `(YYYY-MM-DD, count)` entry per UTC day from `start` to `end`, zeros included."""
    out: list[tuple[str, int]] = []
    day = _utc_day(start)
    last = _utc_day(end)
    while day <= last:
        key = day.strftime("%Y-%m-%d")
        out.append((key, int(counts.get(key, 0))))
        day += timedelta(days=1)
    return tuple(out)


def collect_run_stats(
    store: SQLiteStore,
    project: str,
    *,
    now: float | None = None,
    history_days: int = HISTORY_DAYS,
    top_tasks: int = TOP_TASKS,
) -> RunStats:
    ts = float(now if now is not None else time.time())
    since = ts - history_days * DAY_S

    by_status = {s: 0 for s in RunStatus}
    for status, n in store.count_runs_by_status(project=project).items():
        by_status[RunStatus(status)] = n

    return RunStats(
        runs_by_status=by_status,
        top_tasks=tuple(
            TaskRunCount(task_id=r["task_id"], name=r["name"], handler=r["handler"], count=r["count"])
            for r in store.top_tasks_by_runs(project=project, limit=top_tasks)
        ),
        daily_counts=fill_daily_counts(
            store.daily_run_counts(project=project, created_from=since),
            start=since,
            end=ts,
        ),
        avg_duration_ms=store.avg_duration_ms(project=project, status=RunStatus.COMPLETED),
        total_runs=sum(by_status.values()),
        failed_last_24h=store.count_runs(project=project, status=RunStatus.FAILED, created_from=ts - DAY_S),
        generated_at=ts,
    )
