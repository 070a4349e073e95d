from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Iterator

import pytest

from taskpulse.runtime.errors import (
    IllegalTransitionError,
    InputValidationError,
    InvalidStateError,
    RetryLimitExceededError,
    RunNotFoundError,
    TaskNotFoundError,
)
from taskpulse.runtime.lifecycle import CANCEL_MESSAGE, RunLifecycle, can_transition, transition
from taskpulse.runtime.models import LogLevel, RunStatus, StepTemplate
from taskpulse.runtime.timeline import SimulationPolicy
from taskpulse.runtime.worker import RunWorker
from taskpulse.storage.sqlite_store import SQLiteStore


EXACT = SimulationPolicy(failure_rate=0.0, jitter_pct=0.0)
STEPS = [StepTemplate("fetch", 100), StepTemplate("render", 200), StepTemplate("deliver", 300)]


class _Clock:
    """Advances one second per reading so every run gets a distinct created_at."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        self.t += 1.0
        return self.t


@pytest.fixture()
def db_path() -> Iterator[str]:
    with tempfile.TemporaryDirectory() as td:
        yield os.path.join(td, "app.db")


@pytest.fixture()
def store(db_path: str) -> Iterator[SQLiteStore]:
    s = SQLiteStore(db_path)
    try:
        yield s
    finally:
        s.close()


def _lifecycle(store: SQLiteStore) -> RunLifecycle:
    return RunLifecycle(store, policy=EXACT, clock=_Clock())


def _task(store: SQLiteStore, **kwargs):
    params = dict(project="acme", name="Send Emails", handler="send-email", retry_limit=1, step_templates=STEPS)
    params.update(kwargs)
    return store.create_task(**params)


def test_transition_table() -> None:
    assert can_transition(RunStatus.QUEUED, RunStatus.EXECUTING)
    assert can_transition(RunStatus.EXECUTING, RunStatus.TIMED_OUT)
    assert not can_transition(RunStatus.QUEUED, RunStatus.COMPLETED)
    with pytest.raises(IllegalTransitionError):
        transition(RunStatus.COMPLETED, RunStatus.CANCELLED)
    with pytest.raises(InvalidStateError):
        transition(RunStatus.FAILED, RunStatus.EXECUTING)


def test_failing_run_retry_then_limit(store: SQLiteStore) -> None:
    task = _task(store, simulation={"flaky_attempts": 1})
    lc = _lifecycle(store)

    first = lc.trigger("acme", task.task_id, {"x": 1})
    assert first.run.status == RunStatus.FAILED
    assert len(first.steps) == 3
    assert first.run.duration_ms == 600
    assert first.attempt == 1
    before = store.get_run(run_id=first.run.run_id)

    retried = lc.retry("acme", first.run.run_id)
    assert retried.attempt == 2
    assert retried.original_run_id == first.run.run_id
    assert retried.run.status == RunStatus.COMPLETED
    assert retried.run.triggered_by == "retry"
    assert retried.logs[0].message == f"Retrying run {first.run.run_id}"
    assert retried.logs[0].metadata["original_status"] == "FAILED"

    # The original run is never touched by a retry.
    assert store.get_run(run_id=first.run.run_id) == before

    with pytest.raises(RetryLimitExceededError):
        lc.retry("acme", first.run.run_id)


@pytest.mark.parametrize("retry_limit", [0, 1, 3])
def test_retry_chain_is_bounded_by_retry_limit(store: SQLiteStore, retry_limit: int) -> None:
    task = _task(store, retry_limit=retry_limit, simulation={"flaky_attempts": 100})
    lc = _lifecycle(store)

    latest = lc.trigger("acme", task.task_id, {"job": "nightly"})
    for expected_attempt in range(2, retry_limit + 2):
        latest = lc.retry("acme", latest.run.run_id)
        assert latest.attempt == expected_attempt
        assert latest.run.status == RunStatus.FAILED

    with pytest.raises(RetryLimitExceededError):
        lc.retry("acme", latest.run.run_id)


def test_cancelled_run_can_be_retried(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {"x": 1}, deferred=True)
    cancelled = lc.cancel("acme", queued.run.run_id)
    assert cancelled.status == RunStatus.CANCELLED

    retried = lc.retry("acme", cancelled.run_id)
    assert retried.attempt == 2
    assert retried.original_run_id == cancelled.run_id
    assert retried.run.status == RunStatus.COMPLETED
    assert retried.logs[0].metadata["original_status"] == "CANCELLED"
    assert store.get_run(run_id=cancelled.run_id) == cancelled

    with pytest.raises(RetryLimitExceededError):
        lc.retry("acme", cancelled.run_id)


def test_timed_out_run_can_be_retried(store: SQLiteStore) -> None:
    task = _task(store, timeout_ms=250)
    lc = _lifecycle(store)
    first = lc.trigger("acme", task.task_id, {"x": 1})
    assert first.run.status == RunStatus.TIMED_OUT
    assert first.run.error == "Run exceeded timeout of 250ms"

    retried = lc.retry("acme", first.run.run_id)
    assert retried.attempt == 2
    assert retried.original_run_id == first.run.run_id
    assert retried.run.status == RunStatus.TIMED_OUT
    assert retried.logs[0].metadata["original_status"] == "TIMED_OUT"

    with pytest.raises(RetryLimitExceededError):
        lc.retry("acme", retried.run.run_id)


def test_retry_of_completed_run_is_invalid_state(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    run = lc.trigger("acme", task.task_id, {"x": 1})
    assert run.run.status == RunStatus.COMPLETED
    with pytest.raises(InvalidStateError):
        lc.retry("acme", run.run.run_id)


def test_attempts_group_key_order_permutations(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)

    a = lc.trigger("acme", task.task_id, {"a": 1, "b": {"c": 2, "d": 3}})
    b = lc.trigger("acme", task.task_id, {"b": {"d": 3, "c": 2}, "a": 1})
    c = lc.trigger("acme", task.task_id, {"a": 2})
    assert (a.attempt, b.attempt, c.attempt) == (1, 2, 1)

    # Attempt numbers are positional in the group, not "latest".
    assert lc.get("acme", a.run.run_id).attempt == 1
    assert lc.get("acme", b.run.run_id).attempt == 2


def test_trigger_validates_input_and_task(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    with pytest.raises(InputValidationError):
        lc.trigger("acme", task.task_id, ["not", "an", "object"])
    with pytest.raises(TaskNotFoundError):
        lc.trigger("acme", "task_missing", {})
    with pytest.raises(TaskNotFoundError):
        lc.trigger("other-project", task.task_id, {})


def test_runs_are_scoped_to_their_project(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    run = lc.trigger("acme", task.task_id, {})
    with pytest.raises(RunNotFoundError):
        lc.get("other-project", run.run.run_id)
    with pytest.raises(RunNotFoundError):
        lc.cancel("acme", "run_missing")


@pytest.mark.parametrize("flaky", [0, 1])
def test_cancel_terminal_run_is_rejected_and_leaves_run_unchanged(store: SQLiteStore, flaky: int) -> None:
    task = _task(store, simulation={"flaky_attempts": flaky})
    lc = _lifecycle(store)
    detail = lc.trigger("acme", task.task_id, {"x": 1})
    assert detail.run.status.terminal

    before = lc.get("acme", detail.run.run_id)
    with pytest.raises(InvalidStateError):
        lc.cancel("acme", detail.run.run_id)
    after = lc.get("acme", detail.run.run_id)
    assert after.run == before.run
    assert after.logs == before.logs
    assert after.steps == before.steps


def test_cancel_already_cancelled_run_is_rejected(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {}, deferred=True)
    lc.cancel("acme", queued.run.run_id)
    with pytest.raises(InvalidStateError):
        lc.cancel("acme", queued.run.run_id)


def test_cancel_queued_run(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {"x": 1}, deferred=True)
    assert queued.run.status == RunStatus.QUEUED
    assert [s.status for s in queued.steps] == ["pending"] * 3

    run = lc.cancel("acme", queued.run.run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.error == CANCEL_MESSAGE
    assert run.completed_at is not None
    # Never started, so no duration.
    assert run.duration_ms is None

    detail = lc.get("acme", run.run_id)
    assert [s.status for s in detail.steps] == ["cancelled"] * 3
    warn = detail.logs[-1]
    assert warn.level == LogLevel.WARN
    assert warn.message == CANCEL_MESSAGE
    assert warn.metadata["previous_status"] == "QUEUED"
    assert warn.metadata["cancelled_at"] == run.completed_at


def test_cancel_executing_run_records_duration(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {}, deferred=True)
    started = lc.start(queued.run.run_id)
    assert started.status == RunStatus.EXECUTING

    run = lc.cancel("acme", started.run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.duration_ms == round((run.completed_at - run.started_at) * 1000)
    detail = lc.get("acme", run.run_id)
    assert detail.logs[-1].metadata["previous_status"] == "EXECUTING"
    first = detail.steps[0]
    assert first.status == "cancelled"
    assert first.end_time == run.completed_at


def test_start_then_complete(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {"x": 1}, deferred=True)

    started = lc.start(queued.run.run_id)
    steps = store.list_steps(run_id=started.run_id)
    assert [s.status for s in steps] == ["executing", "pending", "pending"]
    assert steps[0].start_time == started.started_at

    with pytest.raises(InvalidStateError):
        lc.start(started.run_id)

    done = lc.complete(started.run_id)
    assert done.status == RunStatus.COMPLETED
    assert done.output is not None
    assert done.duration_ms == 600
    assert done.duration_ms == round((done.completed_at - done.started_at) * 1000)

    detail = lc.get("acme", done.run_id)
    assert [s.status for s in detail.steps] == ["success"] * 3
    assert detail.steps[-1].end_time <= done.completed_at + 1e-9
    messages = [entry.message for entry in detail.logs]
    assert messages[0] == "Run queued for task: Send Emails"
    assert messages.count("Run started for task: Send Emails") == 1
    assert messages[-1] == "Run completed successfully in 600ms"

    with pytest.raises(InvalidStateError):
        lc.complete(done.run_id)


def test_start_next_picks_the_oldest_queued_run(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    first = lc.trigger("acme", task.task_id, {"n": 1}, deferred=True)
    lc.trigger("acme", task.task_id, {"n": 2}, deferred=True)

    started = lc.start_next()
    assert started is not None and started.run_id == first.run.run_id
    assert lc.start_next() is not None
    assert lc.start_next() is None


def test_worker_tick_starts_and_completes_due_runs(db_path: str, store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    queued = lc.trigger("acme", task.task_id, {}, deferred=True)

    worker = RunWorker(db_path=db_path)
    changed = worker.tick(lc)
    assert changed == 2
    assert store.get_run(run_id=queued.run.run_id).status == RunStatus.COMPLETED
    assert worker.tick(lc) == 0
    assert worker.status_snapshot()["ticks"] == 2


def test_list_pages_carry_attempts(store: SQLiteStore) -> None:
    task = _task(store)
    lc = _lifecycle(store)
    for _ in range(3):
        lc.trigger("acme", task.task_id, {"same": True})

    page1 = lc.list("acme", limit=2)
    assert page1["has_more"] is True
    assert [attempt for _, attempt in page1["items"]] == [3, 2]

    page2 = lc.list("acme", limit=2, cursor=page1["next_cursor"])
    assert page2["has_more"] is False
    assert [attempt for _, attempt in page2["items"]] == [1]


def test_concurrent_cancels_only_one_succeeds(db_path: str, store: SQLiteStore) -> None:
    task = _task(store)
    queued = _lifecycle(store).trigger("acme", task.task_id, {}, deferred=True)
    run_id = queued.run.run_id

    n = 6
    barrier = threading.Barrier(n)
    results: list[str] = []
    lock = threading.Lock()

    def _cancel() -> None:
        own = SQLiteStore(db_path)
        try:
            barrier.wait()
            try:
                RunLifecycle(own, policy=EXACT).cancel("acme", run_id)
                outcome = "ok"
            except InvalidStateError:
                outcome = "invalid_state"
            with lock:
                results.append(outcome)
        finally:
            own.close()

    threads = [threading.Thread(target=_cancel) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["invalid_state"] * (n - 1) + ["ok"]
    logs = store.list_logs(run_id=run_id)
    assert sum(1 for entry in logs if entry.level == LogLevel.WARN) == 1


def test_concurrent_retries_are_accounted_one_after_another(db_path: str, store: SQLiteStore) -> None:
    task = _task(store, retry_limit=2, simulation={"flaky_attempts": 100})
    failed = _lifecycle(store).trigger("acme", task.task_id, {"x": 1})
    assert failed.run.status == RunStatus.FAILED

    n = 5
    barrier = threading.Barrier(n)
    attempts: list[int] = []
    rejected: list[str] = []
    lock = threading.Lock()

    def _retry() -> None:
        own = SQLiteStore(db_path)
        try:
            barrier.wait()
            try:
                detail = RunLifecycle(own, policy=EXACT).retry("acme", failed.run.run_id)
                with lock:
                    attempts.append(detail.attempt)
            except RetryLimitExceededError as e:
                with lock:
                    rejected.append(e.code)
        finally:
            own.close()

    threads = [threading.Thread(target=_retry) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(attempts) == [2, 3]
    assert rejected == ["limit_exceeded"] * (n - 2)
