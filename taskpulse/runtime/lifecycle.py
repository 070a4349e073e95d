"""Run state machine and the operations that drive it.

QUEUED -> EXECUTING -> {COMPLETED, FAILED, TIMED_OUT}
QUEUED | EXECUTING -> CANCELLED

Every mutation runs inside one `BEGIN IMMEDIATE` transaction: the run is
re-read under the write lock, the transition is checked, and the status is
written with a compare-and-set together with its log lines. Two concurrent
cancels therefore cannot both succeed, and concurrent retries of one run are
accounted one after another.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable

from taskpulse.runtime.attempts import check_retry, input_hash, normalize_input
from taskpulse.runtime.errors import (
    IllegalTransitionError,
    InvalidStateError,
    RunNotFoundError,
    TaskNotFoundError,
)
from taskpulse.runtime.models import (
    LogLevel,
    Run,
    RunDetail,
    RunStatus,
    SimulatedRun,
    TaskDefinition,
    duration_between,
)
from taskpulse.runtime.timeline import RetryOrigin, SimulationPolicy, generate_timeline, plan_queued_run
from taskpulse.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Run was cancelled by user"

ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.EXECUTING, RunStatus.CANCELLED}),
    RunStatus.EXECUTING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.TIMED_OUT, RunStatus.CANCELLED}
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
    RunStatus.TIMED_OUT: frozenset(),
}

CANCELLABLE_STATUSES: frozenset[RunStatus] = frozenset(
    s for s, targets in ALLOWED_TRANSITIONS.items() if RunStatus.CANCELLED in targets
)

_OPEN_STEP_STATUSES = frozenset({"pending", "executing"})


def can_transition(current: RunStatus, to: RunStatus) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(current: RunStatus, to: RunStatus) -> RunStatus:
    if not can_transition(current, to):
        raise IllegalTransitionError(
            f"Illegal run transition: {current.value} -> {to.value}",
            details={"from": current.value, "to": to.value},
        )
    return to


class RunLifecycle:
    """Run operations over one `SQLiteStore` connection.

    The store is owned by the caller. `clock` is read once per operation.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        policy: SimulationPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policy = policy or SimulationPolicy()
        self._clock = clock

    # --- Lookups
    def _require_task(self, task_id: str, project: str | None = None) -> TaskDefinition:
        task = self.store.get_task(task_id=task_id, project=project)
        if task is None:
            raise TaskNotFoundError("Task not found.", details={"task_id": task_id})
        return task

    def _require_run(self, run_id: str, project: str | None = None) -> Run:
        run = self.store.get_run(run_id=run_id, project=project)
        if run is None:
            raise RunNotFoundError("Run not found.", details={"run_id": run_id})
        return run

    def attempt_of(self, run: Run) -> int:
        return self.store.count_attempts(
            task_id=run.task_id,
            input_hash=input_hash(run.input),
            as_of=run.created_at,
        )

    def _detail(self, run: Run, task: TaskDefinition, *, attempt: int | None = None) -> RunDetail:
        logs = tuple(self.store.list_logs(run_id=run.run_id))
        original_run_id = None
        for entry in logs:
            origin = (entry.metadata or {}).get("original_run_id")
            if origin:
                original_run_id = str(origin)
                break
        return RunDetail(
            run=run,
            task=task,
            steps=tuple(self.store.list_steps(run_id=run.run_id)),
            logs=logs,
            attempt=int(attempt) if attempt is not None else self.attempt_of(run),
            original_run_id=original_run_id,
        )

    def get(self, project: str, run_id: str) -> RunDetail:
        run = self._require_run(run_id, project)
        task = self._require_task(run.task_id)
        return self._detail(run, task)

    def list(
        self,
        project: str,
        *,
        limit: int = 50,
        cursor: tuple[float, str] | None = None,
        statuses: list[str] | None = None,
        task_id: str | None = None,
        triggered_by: str | None = None,
        created_from: float | None = None,
        created_to: float | None = None,
    ) -> dict[str, Any]:
        """One page of runs, newest first, each item paired with its attempt number."""
        page = self.store.list_runs_page(
            project=project,
            limit=limit,
            cursor=cursor,
            statuses=statuses,
            task_id=task_id,
            triggered_by=triggered_by,
            created_from=created_from,
            created_to=created_to,
        )
        page["items"] = [(run, self.attempt_of(run)) for run in page["items"]]
        return page

    # --- Creation
    def trigger(
        self,
        project: str,
        task_id: str,
        input_payload: Any = None,
        triggered_by: str = "manual",
        *,
        deferred: bool = False,
    ) -> RunDetail:
        with self.store.transaction(mode="IMMEDIATE"):
            return self.trigger_locked(project, task_id, input_payload, triggered_by, deferred=deferred)

    def trigger_locked(
        self,
        project: str,
        task_id: str,
        input_payload: Any = None,
        triggered_by: str = "manual",
        *,
        deferred: bool = False,
    ) -> RunDetail:
        """`trigger()` for a caller that already holds an IMMEDIATE transaction on `store`."""
        payload = normalize_input(input_payload)
        digest = input_hash(payload)

        task = self._require_task(task_id, project)
        now = self._clock()
        attempt = self.store.count_attempts(task_id=task.task_id, input_hash=digest, as_of=now) + 1
        if deferred:
            sim = plan_queued_run(task, payload, triggered_by, attempt=attempt, now=now)
        else:
            sim = generate_timeline(task, payload, triggered_by, attempt=attempt, now=now, policy=self.policy)
        run = self.store.insert_simulated_run(project=project, sim=sim, commit=False)

        logger.info(
            "Run triggered",
            extra={"run_id": run.run_id, "task_id": task.task_id, "status": run.status.value, "attempt": attempt},
        )
        return self._detail(run, task, attempt=attempt)

    def retry(self, project: str, run_id: str) -> RunDetail:
        with self.store.transaction(mode="IMMEDIATE"):
            original = self._require_run(run_id, project)
            task = self._require_task(original.task_id)
            now = self._clock()
            attempts = self.store.count_attempts(
                task_id=task.task_id,
                input_hash=input_hash(original.input),
                as_of=now,
            )
            check_retry(task, attempts, original.status)

            sim = generate_timeline(
                task,
                original.input,
                "retry",
                attempt=attempts + 1,
                now=now,
                origin=RetryOrigin(run_id=original.run_id, status=original.status),
                policy=self.policy,
            )
            run = self.store.insert_simulated_run(project=project, sim=sim, commit=False)

        logger.info(
            "Run retried",
            extra={
                "run_id": run.run_id,
                "original_run_id": original.run_id,
                "original_status": original.status.value,
                "attempt": attempts + 1,
            },
        )
        detail = self._detail(run, task, attempt=attempts + 1)
        return replace(detail, original_run_id=original.run_id)

    # --- Transitions
    def cancel(self, project: str, run_id: str) -> Run:
        with self.store.transaction(mode="IMMEDIATE"):
            run = self._require_run(run_id, project)
            if run.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    "Run cannot be cancelled in its current state.",
                    details={"status": run.status.value},
                )
            transition(run.status, RunStatus.CANCELLED)

            now = self._clock()
            ok = self.store.update_run_state(
                run_id=run.run_id,
                expected=CANCELLABLE_STATUSES,
                status=RunStatus.CANCELLED,
                fields={
                    "completed_at": now,
                    "error": CANCEL_MESSAGE,
                    "duration_ms": duration_between(run.started_at, now),
                },
                commit=False,
            )
            if not ok:
                raise InvalidStateError("Run status changed concurrently.", details={"status": run.status.value})

            for step in self.store.list_steps(run_id=run.run_id):
                if step.status not in _OPEN_STEP_STATUSES:
                    continue
                if step.status == "executing":
                    end_time = max(step.start_time, now)
                else:
                    end_time = step.start_time
                self.store.update_step(
                    step_id=step.step_id,
                    status="cancelled",
                    end_time=end_time,
                    duration_ms=duration_between(step.start_time, end_time),
                    commit=False,
                )

            self.store.append_log(
                run_id=run.run_id,
                level=LogLevel.WARN,
                message=CANCEL_MESSAGE,
                metadata={"previous_status": run.status.value, "cancelled_at": now},
                timestamp=now,
                commit=False,
            )
            updated = self._require_run(run.run_id)

        logger.info("Run cancelled", extra={"run_id": run.run_id, "previous_status": run.status.value})
        return updated

    def start(self, run_id: str, project: str | None = None) -> Run:
        with self.store.transaction(mode="IMMEDIATE"):
            run = self._require_run(run_id, project)
            transition(run.status, RunStatus.EXECUTING)
            task = self._require_task(run.task_id)

            now = self._clock()
            ok = self.store.update_run_state(
                run_id=run.run_id,
                expected=[RunStatus.QUEUED],
                status=RunStatus.EXECUTING,
                fields={"started_at": now},
                commit=False,
            )
            if not ok:
                raise InvalidStateError("Run status changed concurrently.", details={"status": run.status.value})

            # Re-anchor the planned steps at the real start time.
            planned = plan_queued_run(task, run.input, run.triggered_by, now=now).steps
            if planned:
                planned = (replace(planned[0], status="executing"), *planned[1:])
            self.store.replace_steps(run_id=run.run_id, steps=planned, commit=False)
            self.store.append_log(
                run_id=run.run_id,
                level=LogLevel.INFO,
                message=f"Run started for task: {task.name}",
                metadata={"task_name": task.handler, "triggered_by": run.triggered_by},
                timestamp=now,
                commit=False,
            )
            updated = self._require_run(run.run_id)

        logger.info("Run started", extra={"run_id": run.run_id, "task_id": run.task_id})
        return updated

    def start_next(self) -> Run | None:
        """Start the oldest queued run, if any."""
        run_id = self.store.next_queued_run_id()
        if run_id is None:
            return None
        try:
            return self.start(run_id)
        except InvalidStateError:
            # Cancelled or started by someone else between the lookup and the transaction.
            logger.debug("Queued run was claimed concurrently", extra={"run_id": run_id})
            return None

    def _outcome(self, run: Run, task: TaskDefinition) -> SimulatedRun:
        return generate_timeline(
            task,
            run.input,
            run.triggered_by,
            attempt=self.attempt_of(run),
            now=run.created_at,
            started_at=run.started_at,
            policy=self.policy,
            include_start_log=False,
        )

    def complete(self, run_id: str, project: str | None = None) -> Run:
        with self.store.transaction(mode="IMMEDIATE"):
            run = self._require_run(run_id, project)
            if run.status != RunStatus.EXECUTING:
                raise InvalidStateError(
                    "Only executing runs can be completed.",
                    details={"status": run.status.value},
                )
            task = self._require_task(run.task_id)
            sim = self._outcome(run, task)
            transition(run.status, sim.status)

            ok = self.store.update_run_state(
                run_id=run.run_id,
                expected=[RunStatus.EXECUTING],
                status=sim.status,
                fields={
                    "completed_at": sim.completed_at,
                    "duration_ms": duration_between(run.started_at, sim.completed_at),
                    "error": sim.error,
                    "output": sim.output,
                },
                commit=False,
            )
            if not ok:
                raise InvalidStateError("Run status changed concurrently.", details={"status": run.status.value})
            self.store.replace_steps(run_id=run.run_id, steps=sim.steps, commit=False)
            self.store.insert_logs(run_id=run.run_id, logs=sim.logs, commit=False)
            updated = self._require_run(run.run_id)

        logger.info("Run completed", extra={"run_id": run.run_id, "status": updated.status.value})
        return updated

    def complete_due(self, *, limit: int = 100) -> list[str]:
        """Complete executing runs whose simulated end time has passed. Returns their ids."""
        now = self._clock()
        done: list[str] = []
        for run in self.store.list_runs_by_status(RunStatus.EXECUTING, limit=limit):
            task = self.store.get_task(task_id=run.task_id)
            if task is None or run.started_at is None:
                continue
            sim = self._outcome(run, task)
            if sim.completed_at is not None and sim.completed_at > now:
                continue
            try:
                self.complete(run.run_id)
            except InvalidStateError:
                logger.debug("Executing run changed state before completion", extra={"run_id": run.run_id})
                continue
            done.append(run.run_id)
        return done

