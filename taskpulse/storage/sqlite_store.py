from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterable

from taskpulse.runtime.attempts import canonical_input, input_hash
from taskpulse.runtime.models import (
    LogEntry,
    LogLevel,
    Run,
    RunStatus,
    SimulatedRun,
    Step,
    StepTemplate,
    TaskDefinition,
)


SCHEMA_VERSION = 2

# Columns a status change may touch besides `status` and `updated_at`.
_RUN_STATE_COLUMNS = frozenset({"started_at", "completed_at", "duration_ms", "error", "output_json"})


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: str | None, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def _opt_float(v: Any) -> float | None:
    return float(v) if v is not None else None


def _opt_int(v: Any) -> int | None:
    return int(v) if v is not None else None


def default_db_path() -> str:
    return os.getenv("TASKPULSE_SQLITE_PATH", "data/taskpulse.db")


class SQLiteStore:
    """SQLite-backed store for tasks, runs, steps and run logs.

    One connection per instance; open one store per request or thread and
    close it when done. Multi-statement mutations go through `transaction()`
    and pass `commit=False` to the individual write helpers.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so a status read inside
        the block cannot be invalidated by another writer before the block ends.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): tasks/runs/steps/logs.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
              task_id TEXT PRIMARY KEY,
              project TEXT NOT NULL,
              created_at REAL NOT NULL,
              name TEXT NOT NULL,
              handler TEXT NOT NULL,
              description TEXT,
              retry_limit INTEGER NOT NULL DEFAULT 0,
              timeout_ms INTEGER,
              config_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              project TEXT NOT NULL,
              task_id TEXT NOT NULL,
              status TEXT NOT NULL,
              triggered_by TEXT NOT NULL,
              input_json TEXT NOT NULL,
              input_hash TEXT NOT NULL,
              output_json TEXT,
              error TEXT,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              updated_at REAL NOT NULL,
              duration_ms INTEGER,
              FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
              step_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              name TEXT NOT NULL,
              type TEXT NOT NULL,
              start_time REAL NOT NULL,
              end_time REAL,
              duration_ms INTEGER,
              status TEXT NOT NULL,
              metadata_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS logs (
              log_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              timestamp REAL NOT NULL,
              level TEXT NOT NULL,
              message TEXT NOT NULL,
              metadata_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_project_handler ON tasks(project, handler);")
        # Attempt counting: equal canonical input within a task, bounded by creation time.
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_runs_attempt_group ON runs(task_id, input_hash, created_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_project_created ON runs(project, created_at, run_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status_created ON runs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_steps_run_ts ON steps(run_id, start_time);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_logs_run_ts ON logs(run_id, timestamp);")

        # New databases start at schema_version=1, then migrate up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        with self.transaction(mode="IMMEDIATE"):
            # Another connection may have migrated while we waited for the lock.
            current = self._get_schema_version()
            cur = self._conn.cursor()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Idempotency table for POST .../runs (client-side retries of a trigger).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )

    # --- Idempotency
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self._conn.commit()

    # --- Tasks
    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> TaskDefinition:
        cfg = _json_loads(row["config_json"], {})
        templates = tuple(
            StepTemplate(name=str(t["name"]), avg_duration_ms=int(t["avg_duration_ms"]))
            for t in (cfg.get("step_templates") or [])
        )
        return TaskDefinition(
            task_id=row["task_id"],
            project=row["project"],
            name=row["name"],
            handler=row["handler"],
            retry_limit=int(row["retry_limit"]),
            timeout_ms=_opt_int(row["timeout_ms"]),
            step_templates=templates,
            simulation=dict(cfg.get("simulation") or {}),
            description=row["description"],
            created_at=float(row["created_at"]),
        )

    def create_task(
        self,
        *,
        project: str,
        name: str,
        handler: str,
        retry_limit: int = 0,
        timeout_ms: int | None = None,
        step_templates: Iterable[StepTemplate] = (),
        simulation: dict[str, Any] | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> TaskDefinition:
        cleaned_name = (name or "").strip()
        cleaned_handler = (handler or "").strip()
        if not cleaned_name:
            raise ValueError("Task name cannot be empty.")
        if not cleaned_handler:
            raise ValueError("Task handler cannot be empty.")
        if timeout_ms is not None and int(timeout_ms) <= 0:
            raise ValueError("timeout_ms must be > 0.")

        task = TaskDefinition(
            task_id=_new_id("task"),
            project=project,
            name=cleaned_name,
            handler=cleaned_handler,
            retry_limit=int(retry_limit),
            timeout_ms=_opt_int(timeout_ms),
            step_templates=tuple(step_templates),
            simulation=dict(simulation or {}),
            description=description,
            created_at=_utc_ts(),
        )
        config = {
            "step_templates": [asdict(t) for t in task.step_templates],
            "simulation": task.simulation,
        }
        self._conn.execute(
            """
            INSERT INTO tasks(
              task_id, project, created_at, name, handler, description, retry_limit, timeout_ms, config_json
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                task.task_id,
                task.project,
                task.created_at,
                task.name,
                task.handler,
                task.description,
                task.retry_limit,
                task.timeout_ms,
                _json_dumps(config),
            ),
        )
        if commit:
            self._conn.commit()
        return task

    def get_task(self, *, task_id: str, project: str | None = None) -> TaskDefinition | None:
        sql = "SELECT * FROM tasks WHERE task_id = ?"
        params: list[Any] = [task_id]
        if project is not None:
            sql += " AND project = ?"
            params.append(project)
        row = self._conn.execute(sql + " LIMIT 1;", tuple(params)).fetchone()
        return self._task_from_row(row) if row is not None else None

    def list_tasks(self, *, project: str) -> list[TaskDefinition]:
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE project = ? ORDER BY created_at ASC, task_id ASC;",
            (project,),
        ).fetchall()
        return [self._task_from_row(r) for r in rows]

    # --- Runs
    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            project=row["project"],
            task_id=row["task_id"],
            status=RunStatus(row["status"]),
            triggered_by=row["triggered_by"],
            input=_json_loads(row["input_json"], {}),
            output=_json_loads(row["output_json"], None),
            error=row["error"],
            created_at=float(row["created_at"]),
            started_at=_opt_float(row["started_at"]),
            completed_at=_opt_float(row["completed_at"]),
            updated_at=float(row["updated_at"]),
            duration_ms=_opt_int(row["duration_ms"]),
        )

    def insert_simulated_run(self, *, project: str, sim: SimulatedRun, commit: bool = True) -> Run:
        """Persist a generated run with its steps and logs."""
        run_id = _new_id("run")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO runs(
              run_id, project, task_id, status, triggered_by, input_json, input_hash, output_json, error,
              created_at, started_at, completed_at, updated_at, duration_ms
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run_id,
                project,
                sim.task_id,
                sim.status.value,
                sim.triggered_by,
                canonical_input(sim.input),
                input_hash(sim.input),
                _json_dumps(sim.output) if sim.output is not None else None,
                sim.error,
                sim.created_at,
                sim.started_at,
                sim.completed_at,
                ts,
                sim.duration_ms,
            ),
        )
        self.insert_steps(run_id=run_id, steps=sim.steps, commit=False)
        self.insert_logs(run_id=run_id, logs=sim.logs, commit=False)
        if commit:
            self._conn.commit()

        run = self.get_run(run_id=run_id)
        assert run is not None
        return run

    def get_run(self, *, run_id: str, project: str | None = None) -> Run | None:
        sql = "SELECT * FROM runs WHERE run_id = ?"
        params: list[Any] = [run_id]
        if project is not None:
            sql += " AND project = ?"
            params.append(project)
        row = self._conn.execute(sql + " LIMIT 1;", tuple(params)).fetchone()
        return self._run_from_row(row) if row is not None else None

    def count_attempts(self, *, task_id: str, input_hash: str, as_of: float) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS n
            FROM runs
            WHERE task_id = ? AND input_hash = ? AND created_at <= ?;
            """,
            (task_id, input_hash, float(as_of)),
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    def update_run_state(
        self,
        *,
        run_id: str,
        expected: Iterable[RunStatus],
        status: RunStatus,
        fields: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> bool:
        """Compare-and-set a run's status.

        Returns False (and writes nothing) when the run's current status is not
        in `expected`.
        """
        expected_values = [s.value for s in expected]
        if not expected_values:
            raise ValueError("expected must not be empty.")

        extra = dict(fields or {})
        if "output" in extra:
            output = extra.pop("output")
            extra["output_json"] = _json_dumps(output) if output is not None else None
        unknown = set(extra) - _RUN_STATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown run columns: {sorted(unknown)!r}")

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, _utc_ts()]
        for col in sorted(extra):
            assignments.append(f"{col} = ?")
            params.append(extra[col])

        updated = self._conn.execute(
            f"""
            UPDATE runs
            SET {", ".join(assignments)}
            WHERE run_id = ? AND status IN ({",".join(["?"] * len(expected_values))});
            """,
            (*params, run_id, *expected_values),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def next_queued_run_id(self) -> str | None:
        row = self._conn.execute(
            """
            SELECT run_id
            FROM runs
            WHERE status = ?
            ORDER BY created_at ASC, run_id ASC
            LIMIT 1;
            """,
            (RunStatus.QUEUED.value,),
        ).fetchone()
        return str(row["run_id"]) if row is not None else None

    def list_runs_by_status(self, status: RunStatus, *, limit: int = 100) -> list[Run]:
        rows = self._conn.execute(
            "SELECT * FROM runs WHERE status = ? ORDER BY created_at ASC, run_id ASC LIMIT ?;",
            (status.value, int(limit)),
        ).fetchall()
        return [self._run_from_row(r) for r in rows]

    def list_runs_page(
        self,
        *,
        project: str,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None = None,
        task_id: str | None = None,
        triggered_by: str | None = None,
        created_from: float | None = None,
        created_to: float | None = None,
    ) -> dict[str, Any]:
        where = ["project = ?"]
        params: list[Any] = [project]

        if task_id:
            where.append("task_id = ?")
            params.append(task_id)

        if triggered_by:
            where.append("triggered_by = ?")
            params.append(triggered_by)

        # Creation-time bounds are inclusive.
        if created_from is not None:
            where.append("created_at >= ?")
            params.append(float(created_from))
        if created_to is not None:
            where.append("created_at <= ?")
            params.append(float(created_to))

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, run_id = cursor
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([float(created_at), float(created_at), str(run_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT *
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [self._run_from_row(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last.created_at), str(last.run_id))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runs_by_status(self, *, project: str | None = None) -> dict[str, int]:
        if project is None:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM runs WHERE project = ? GROUP BY status ORDER BY status;",
                (project,),
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Aggregates
    def count_runs(
        self,
        *,
        project: str,
        status: RunStatus | None = None,
        created_from: float | None = None,
    ) -> int:
        where = ["project = ?"]
        params: list[Any] = [project]
        if status is not None:
            where.append("status = ?")
            params.append(status.value)
        if created_from is not None:
            where.append("created_at >= ?")
            params.append(float(created_from))
        row = self._conn.execute(
            f"SELECT COUNT(*) AS n FROM runs WHERE {' AND '.join(where)};",
            tuple(params),
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    def top_tasks_by_runs(self, *, project: str, limit: int = 10) -> list[dict[str, Any]]:
        """Tasks with the most runs in `project`, busiest first."""
        rows = self._conn.execute(
            """
            SELECT r.task_id AS task_id, t.name AS name, t.handler AS handler, COUNT(*) AS n
            FROM runs r
            LEFT JOIN tasks t ON t.task_id = r.task_id
            WHERE r.project = ?
            GROUP BY r.task_id
            ORDER BY n DESC, r.task_id ASC
            LIMIT ?;
            """,
            (project, int(limit)),
        ).fetchall()
        return [
            {"task_id": str(r["task_id"]), "name": r["name"], "handler": r["handler"], "count": int(r["n"])}
            for r in rows
        ]

    def daily_run_counts(self, *, project: str, created_from: float) -> dict[str, int]:
        """Run counts per UTC calendar day (`YYYY-MM-DD`) since `created_from`."""
        rows = self._conn.execute(
            """
            SELECT DATE(created_at, 'unixepoch') AS day, COUNT(*) AS n
            FROM runs
            WHERE project = ? AND created_at >= ?
            GROUP BY day
            ORDER BY day ASC;
            """,
            (project, float(created_from)),
        ).fetchall()
        return {str(r["day"]): int(r["n"]) for r in rows}

    def avg_duration_ms(self, *, project: str, status: RunStatus = RunStatus.COMPLETED) -> float | None:
        row = self._conn.execute(
            "SELECT AVG(duration_ms) AS avg_ms FROM runs WHERE project = ? AND status = ? AND duration_ms IS NOT NULL;",
            (project, status.value),
        ).fetchone()
        return _opt_float(row["avg_ms"]) if row is not None else None

    # --- Steps
    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> Step:
        return Step(
            step_id=row["step_id"],
            name=row["name"],
            type=row["type"],
            start_time=float(row["start_time"]),
            end_time=_opt_float(row["end_time"]),
            duration_ms=_opt_int(row["duration_ms"]),
            status=row["status"],
            metadata=_json_loads(row["metadata_json"], {}),
        )

    def insert_steps(self, *, run_id: str, steps: Iterable[Step], commit: bool = True) -> None:
        self._conn.executemany(
            """
            INSERT INTO steps(step_id, run_id, name, type, start_time, end_time, duration_ms, status, metadata_json)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    _new_id("step"),
                    run_id,
                    s.name,
                    s.type,
                    float(s.start_time),
                    s.end_time,
                    s.duration_ms,
                    s.status,
                    _json_dumps(s.metadata or {}),
                )
                for s in steps
            ],
        )
        if commit:
            self._conn.commit()

    def replace_steps(self, *, run_id: str, steps: Iterable[Step], commit: bool = True) -> None:
        self._conn.execute("DELETE FROM steps WHERE run_id = ?;", (run_id,))
        self.insert_steps(run_id=run_id, steps=steps, commit=commit)

    def update_step(
        self,
        *,
        step_id: str,
        status: str,
        end_time: float | None = None,
        duration_ms: int | None = None,
        commit: bool = True,
    ) -> None:
        self._conn.execute(
            """
            UPDATE steps
            SET
              status = ?,
              end_time = COALESCE(?, end_time),
              duration_ms = COALESCE(?, duration_ms)
            WHERE step_id = ?;
            """,
            (status, end_time, duration_ms, step_id),
        )
        if commit:
            self._conn.commit()

    def list_steps(self, *, run_id: str) -> list[Step]:
        rows = self._conn.execute(
            "SELECT * FROM steps WHERE run_id = ? ORDER BY start_time ASC, rowid ASC;",
            (run_id,),
        ).fetchall()
        return [self._step_from_row(r) for r in rows]

    # --- Logs
    @staticmethod
    def _log_from_row(row: sqlite3.Row) -> LogEntry:
        return LogEntry(
            log_id=row["log_id"],
            level=LogLevel(row["level"]),
            message=row["message"],
            timestamp=float(row["timestamp"]),
            metadata=_json_loads(row["metadata_json"], {}),
        )

    def insert_logs(self, *, run_id: str, logs: Iterable[LogEntry], commit: bool = True) -> None:
        self._conn.executemany(
            """
            INSERT INTO logs(log_id, run_id, timestamp, level, message, metadata_json)
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    _new_id("log"),
                    run_id,
                    float(entry.timestamp),
                    LogLevel(entry.level).value,
                    entry.message,
                    _json_dumps(entry.metadata or {}),
                )
                for entry in logs
            ],
        )
        if commit:
            self._conn.commit()

    def append_log(
        self,
        *,
        run_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
        timestamp: float | None = None,
        commit: bool = True,
    ) -> LogEntry:
        entry = LogEntry(
            log_id=_new_id("log"),
            level=LogLevel(level),
            message=message,
            timestamp=float(timestamp if timestamp is not None else _utc_ts()),
            metadata=dict(metadata or {}),
        )
        self._conn.execute(
            """
            INSERT INTO logs(log_id, run_id, timestamp, level, message, metadata_json)
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            (entry.log_id, run_id, entry.timestamp, entry.level.value, entry.message, _json_dumps(entry.metadata)),
        )
        if commit:
            self._conn.commit()
        return entry

    def list_logs(self, *, run_id: str) -> list[LogEntry]:
        rows = self._conn.execute(
            "SELECT * FROM logs WHERE run_id = ? ORDER BY timestamp ASC, rowid ASC;",
            (run_id,),
        ).fetchall()
        return [self._log_from_row(r) for r in rows]
