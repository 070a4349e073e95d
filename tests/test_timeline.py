from __future__ import annotations

import pytest

from taskpulse.runtime.models import LogLevel, RunStatus, StepTemplate, TaskDefinition
from taskpulse.runtime.timeline import (
    ERROR_MESSAGES,
    RetryOrigin,
    SimulationPolicy,
    generate_timeline,
    plan_queued_run,
    timeline_seed,
)


NOW = 1_700_000_000.0
EXACT = SimulationPolicy(failure_rate=0.0, jitter_pct=0.0)


def _task(**kwargs) -> TaskDefinition:
    defaults = dict(
        task_id="task_1",
        project="acme",
        name="Send Emails",
        handler="send-email",
        retry_limit=1,
        step_templates=(
            StepTemplate("fetch", 100),
            StepTemplate("render", 200),
            StepTemplate("deliver", 300),
        ),
    )
    defaults.update(kwargs)
    return TaskDefinition(**defaults)


def test_zero_jitter_gives_exact_average_durations() -> None:
    sim = generate_timeline(_task(), {"x": 1}, attempt=1, now=NOW, policy=EXACT)
    assert sim.status == RunStatus.COMPLETED
    assert [s.duration_ms for s in sim.steps] == [100, 200, 300]
    assert [s.status for s in sim.steps] == ["success", "success", "success"]
    assert sim.duration_ms == 600
    assert sim.started_at == pytest.approx(NOW + 0.05)
    assert sim.completed_at == pytest.approx(sim.started_at + 0.6)
    assert sim.output is not None and sim.output["emails_sent"] >= 1
    assert sim.error is None


def test_step_offsets_are_cumulative() -> None:
    sim = generate_timeline(_task(), {"x": 1}, now=NOW, policy=EXACT)
    starts = [s.start_time - sim.started_at for s in sim.steps]
    assert starts == pytest.approx([0.0, 0.1, 0.3])
    for prev, cur in zip(sim.steps, sim.steps[1:]):
        assert prev.end_time == pytest.approx(cur.start_time)


def test_same_seed_same_timeline_shifted_by_now() -> None:
    policy = SimulationPolicy(failure_rate=0.5, jitter_pct=0.3)
    a = generate_timeline(_task(), {"x": 1, "y": [1, 2]}, attempt=2, now=NOW, policy=policy)
    b = generate_timeline(_task(), {"y": [1, 2], "x": 1}, attempt=2, now=NOW + 10, policy=policy)

    assert a.status == b.status
    assert [s.duration_ms for s in a.steps] == [s.duration_ms for s in b.steps]
    assert [entry.message for entry in a.logs] == [entry.message for entry in b.logs]
    assert [entry.timestamp + 10 for entry in a.logs] == pytest.approx([entry.timestamp for entry in b.logs])


def test_attempt_changes_the_seed() -> None:
    assert timeline_seed("task_1", {"x": 1}, 1) != timeline_seed("task_1", {"x": 1}, 2)
    assert timeline_seed("task_1", {"x": 1, "y": 2}, 1) == timeline_seed("task_1", {"y": 2, "x": 1}, 1)


def test_jittered_durations_stay_within_bounds() -> None:
    policy = SimulationPolicy(failure_rate=0.0, jitter_pct=0.3)
    for i in range(20):
        sim = generate_timeline(_task(), {"i": i}, now=NOW, policy=policy)
        for tpl, step in zip(_task().step_templates, sim.steps):
            assert tpl.avg_duration_ms * 0.7 - 1 <= step.duration_ms <= tpl.avg_duration_ms * 1.3 + 1


def test_flaky_attempts_fail_last_step_then_succeed() -> None:
    task = _task(simulation={"flaky_attempts": 1})

    first = generate_timeline(task, {"x": 1}, attempt=1, now=NOW, policy=EXACT)
    assert first.status == RunStatus.FAILED
    assert len(first.steps) == 3
    assert [s.status for s in first.steps] == ["success", "success", "error"]
    assert first.duration_ms == 600
    assert first.output is None
    assert first.error is not None and first.error.startswith("Step 'deliver' failed: ")
    assert first.error.split(": ", 1)[1] in ERROR_MESSAGES

    second = generate_timeline(task, {"x": 1}, attempt=2, now=NOW, policy=EXACT)
    assert second.status == RunStatus.COMPLETED


def test_failure_never_hits_first_step_and_skips_the_rest() -> None:
    policy = SimulationPolicy(failure_rate=1.0, jitter_pct=0.0)
    for i in range(20):
        sim = generate_timeline(_task(), {"i": i}, now=NOW, policy=policy)
        assert sim.status == RunStatus.FAILED
        statuses = [s.status for s in sim.steps]
        assert statuses[0] == "success"
        failed_at = statuses.index("error")
        assert failed_at in (1, 2)
        for s in sim.steps[failed_at + 1 :]:
            assert s.status == "skipped"
            assert s.duration_ms == 0


def test_single_step_task_can_fail_on_its_only_step() -> None:
    task = _task(step_templates=(StepTemplate("only", 50),))
    sim = generate_timeline(task, {}, now=NOW, policy=SimulationPolicy(failure_rate=1.0, jitter_pct=0.0))
    assert sim.status == RunStatus.FAILED
    assert [s.status for s in sim.steps] == ["error"]


def test_timeout_cuts_the_step_and_skips_the_rest() -> None:
    sim = generate_timeline(_task(timeout_ms=250), {"x": 1}, now=NOW, policy=EXACT)
    assert sim.status == RunStatus.TIMED_OUT
    assert sim.error == "Run exceeded timeout of 250ms"
    assert [s.status for s in sim.steps] == ["success", "timeout", "skipped"]
    assert [s.duration_ms for s in sim.steps] == [100, 150, 0]
    assert sim.duration_ms == 250


def test_timeout_takes_precedence_over_flaky_failure() -> None:
    task = _task(timeout_ms=250, simulation={"flaky_attempts": 5})
    sim = generate_timeline(task, {"x": 1}, now=NOW, policy=EXACT)
    assert sim.status == RunStatus.TIMED_OUT


def test_log_shape_and_ordering() -> None:
    sim = generate_timeline(_task(), {"x": 1}, now=NOW, policy=EXACT)
    timestamps = [entry.timestamp for entry in sim.logs]
    assert timestamps == sorted(timestamps)

    assert sim.logs[0].message == "Run started for task: Send Emails"
    assert sim.logs[0].timestamp == pytest.approx(sim.started_at)
    assert sim.logs[-1].timestamp == pytest.approx(sim.completed_at)
    assert sim.logs[-1].message == "Run completed successfully in 600ms"

    for step in ("fetch", "render", "deliver"):
        assert any(entry.message == f"Starting {step}..." for entry in sim.logs)
        progress = [
            entry
            for entry in sim.logs
            if entry.level == LogLevel.DEBUG and entry.metadata.get("step_name") == step
        ]
        assert 1 <= len(progress) <= 3
    assert any(entry.message == "Completed render in 200ms" for entry in sim.logs)


def test_last_step_ends_by_completion() -> None:
    policy = SimulationPolicy(failure_rate=0.5, jitter_pct=0.3)
    for i in range(10):
        sim = generate_timeline(_task(timeout_ms=500), {"i": i}, now=NOW, policy=policy)
        assert sim.steps[-1].end_time is not None
        assert sim.steps[-1].end_time <= sim.completed_at + 1e-9
        assert sim.duration_ms == round((sim.completed_at - sim.started_at) * 1000)


def test_retry_mode_prepends_linkage_log() -> None:
    origin = RetryOrigin(run_id="run_orig", status=RunStatus.FAILED)
    sim = generate_timeline(_task(), {"x": 1}, "retry", attempt=2, now=NOW, origin=origin, policy=EXACT)
    first = sim.logs[0]
    assert first.message == "Retrying run run_orig"
    assert first.metadata == {"original_run_id": "run_orig", "original_status": "FAILED", "attempt": 2}
    assert first.timestamp == NOW
    assert sim.triggered_by == "retry"


def test_explicit_start_anchor_and_no_start_log() -> None:
    sim = generate_timeline(
        _task(), {"x": 1}, now=NOW, started_at=NOW + 5, policy=EXACT, include_start_log=False
    )
    assert sim.started_at == NOW + 5
    assert sim.steps[0].start_time == NOW + 5
    assert not any(entry.message.startswith("Run started") for entry in sim.logs)


def test_default_step_template_when_none_registered() -> None:
    task = _task(step_templates=())
    assert [(t.name, t.avg_duration_ms) for t in task.step_templates] == [("execute", 5000)]
    sim = generate_timeline(task, None, now=NOW, policy=EXACT)
    assert sim.input == {}
    assert sim.duration_ms == 5000


def test_plan_queued_run() -> None:
    sim = plan_queued_run(_task(), {"x": 1}, "api", now=NOW)
    assert sim.status == RunStatus.QUEUED
    assert sim.started_at is None and sim.completed_at is None and sim.duration_ms is None
    assert [s.status for s in sim.steps] == ["pending", "pending", "pending"]
    assert all(s.end_time is None for s in sim.steps)
    assert [s.start_time - NOW for s in sim.steps] == pytest.approx([0.0, 0.1, 0.3])
    assert [entry.message for entry in sim.logs] == ["Run queued for task: Send Emails"]


def test_policy_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError):
        SimulationPolicy(failure_rate=1.5)
    with pytest.raises(ValueError):
        SimulationPolicy(jitter_pct=-0.1)


def test_task_simulation_overrides_policy() -> None:
    task = _task(simulation={"failure_rate": 1.0})
    assert EXACT.for_task(task).failure_rate == 1.0
    assert EXACT.for_task(_task()) is EXACT
