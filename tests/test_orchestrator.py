"""End-to-end tests for scheduling, retries, checkpoints and rollback."""

from __future__ import annotations

import math
import threading
import time
from pathlib import Path
from typing import Any, Optional

import pytest
from loguru import logger

from plan_orchestrator.config import OrchestratorSettings
from plan_orchestrator.decisions import DeferredDecider, ScriptedDecider
from plan_orchestrator.errors import StateStoreError
from plan_orchestrator.executors import ExecutorRegistry, ScriptedExecutor
from plan_orchestrator.graph import build_plan
from plan_orchestrator.models import (
    CheckpointDecision,
    OverallStatus,
    Plan,
    RunStatus,
    Task,
    TaskResult,
    TaskStatus,
    ValidationResult,
)
from plan_orchestrator.orchestrator import Orchestrator
from plan_orchestrator.store import RunStore


def _plan(decls: list[dict[str, Any]], plan_id: str = "run") -> Plan:
    plan = build_plan(decls, plan_id=plan_id)
    return plan.with_validation(ValidationResult.skipped_for(plan.complexity_tier))


def _settings(**overrides: Any) -> OrchestratorSettings:
    return OrchestratorSettings(poll_seconds=0.01).with_overrides(**overrides)


def _registry(executor: Optional[Any] = None) -> ExecutorRegistry:
    return ExecutorRegistry(fallback=executor or ScriptedExecutor())


def _start(
    tmp_path: Path,
    plan: Plan,
    *,
    executor: Optional[Any] = None,
    decider: Optional[Any] = None,
    **overrides: Any,
) -> Orchestrator:
    return Orchestrator.start(
        plan,
        _registry(executor),
        store=RunStore(tmp_path, plan.id),
        settings=_settings(**overrides),
        decider=decider,
    )


def _independent(count: int) -> list[dict[str, Any]]:
    return [{"id": f"t{idx:02d}"} for idx in range(count)]


class TrackingExecutor:
    """Record start order and peak parallelism."""

    def __init__(self, delay: float = 0.03) -> None:
        self.delay = delay
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.started: list[str] = []

    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.started.append(task.id)
        time.sleep(self.delay)
        with self.lock:
            self.active -= 1
        return TaskResult()


class RaisingExecutor:
    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        raise RuntimeError("executor crashed")


class AbortingExecutor:
    """Write a file, then ask the orchestrator to abort."""

    def __init__(self) -> None:
        self.orchestrator: Optional[Orchestrator] = None

    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        (workspace / f"{task.id}.txt").write_text("written", encoding="utf-8")
        assert self.orchestrator is not None
        self.orchestrator.request_abort()
        return TaskResult(files_created=[f"{task.id}.txt"])


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


def test_twelve_tasks_make_three_checkpoints(tmp_path: Path) -> None:
    orch = _start(tmp_path, _plan(_independent(12)))

    report = orch.run()

    assert report.overall_status == OverallStatus.SUCCESS
    assert report.run_status == RunStatus.FINISHED
    assert [len(cp["task_ids"]) for cp in report.checkpoints] == [5, 5, 2]
    assert [cp["forced"] for cp in report.checkpoints] == [False, False, True]
    assert [cp["index"] for cp in report.checkpoints] == [1, 2, 3]
    completed = [task_id for cp in report.checkpoints for task_id in cp["task_ids"]]
    assert sorted(completed) == [f"t{idx:02d}" for idx in range(12)]


@pytest.mark.parametrize("count", [1, 4, 5, 6, 10, 11])
def test_checkpoint_count_is_ceiling_of_batches(tmp_path: Path, count: int) -> None:
    orch = _start(tmp_path, _plan(_independent(count)))

    report = orch.run()

    assert len(report.checkpoints) == math.ceil(count / 5)
    assert all(len(cp["task_ids"]) <= 5 for cp in report.checkpoints)
    assert report.checkpoints[-1]["forced"] == (count % 5 != 0)


def test_concurrency_cap_is_respected(tmp_path: Path) -> None:
    executor = TrackingExecutor()
    orch = _start(tmp_path, _plan(_independent(8)), executor=executor, concurrency=2, batch_size=10)

    report = orch.run()

    assert report.overall_status == OverallStatus.SUCCESS
    assert 1 <= executor.peak <= 2


def test_tasks_start_after_their_dependencies(tmp_path: Path) -> None:
    decls = [
        {"id": "a"},
        {"id": "b", "dependencies": ["a"]},
        {"id": "c", "dependencies": ["a"]},
        {"id": "d", "dependencies": ["b", "c"]},
        {"id": "e"},
    ]
    executor = TrackingExecutor(delay=0.01)
    orch = _start(tmp_path, _plan(decls), executor=executor)

    orch.run()

    position = {task_id: idx for idx, task_id in enumerate(executor.started)}
    for decl in decls:
        for dep in decl.get("dependencies", []):
            assert position[dep] < position[decl["id"]]


def test_progress_journal_written(tmp_path: Path) -> None:
    plan = _plan(_independent(2))
    orch = _start(tmp_path, plan)

    orch.run()

    store = RunStore(tmp_path, plan.id)
    events = [event["event"] for event in orch.progress.events()]
    assert events.count("start") == 2
    assert events.count("stop") == 2
    assert "run_finished" in events
    assert "Finished: 2" in store.summary_path.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Retries and escalation
# ---------------------------------------------------------------------------


def test_persistent_failure_escalates_after_three_attempts(tmp_path: Path) -> None:
    plan = _plan([{"id": "flaky", "metadata": {"scripted_results": [{"status": "failed", "error": "boom"}]}}])
    orch = _start(tmp_path, plan, max_retries_override=2)

    report = orch.run()

    record = orch.state.records["flaky"]
    assert record.status == TaskStatus.ESCALATED
    assert record.attempts == 3
    assert record.retry_count == 2
    assert record.last_error == "boom"
    assert report.overall_status == OverallStatus.FAILED
    assert report.escalations[0]["task_id"] == "flaky"
    assert report.escalations[0]["attempts"] == 3


def test_escalation_does_not_block_independent_tasks(tmp_path: Path) -> None:
    decls = [
        {"id": "bad", "metadata": {"scripted_results": [{"status": "failed", "error": "nope"}]}},
        {"id": "after_bad", "dependencies": ["bad"]},
        {"id": "good1"},
        {"id": "good2"},
    ]
    orch = _start(tmp_path, _plan(decls), max_retries_override=1)

    report = orch.run()

    assert orch.state.status_of("good1") == TaskStatus.COMPLETED
    assert orch.state.status_of("good2") == TaskStatus.COMPLETED
    assert orch.state.status_of("bad") == TaskStatus.ESCALATED
    assert orch.state.status_of("after_bad") == TaskStatus.PENDING
    assert report.overall_status == OverallStatus.PARTIAL
    assert report.run_status == RunStatus.PAUSED


def test_retry_then_success(tmp_path: Path) -> None:
    script = [{"status": "failed", "error": "flaky"}, {"status": "completed"}]
    orch = _start(tmp_path, _plan([{"id": "t", "metadata": {"scripted_results": script}}]))

    report = orch.run()

    record = orch.state.records["t"]
    assert report.overall_status == OverallStatus.SUCCESS
    assert (record.attempts, record.retry_count, record.last_error) == (2, 1, None)
    failures = report.checkpoints[0]["summary"]["failures"]
    assert failures == [{"task_id": "t", "attempt": 1, "error": "flaky"}]


def test_executor_exception_is_a_failed_attempt(tmp_path: Path) -> None:
    orch = _start(tmp_path, _plan([{"id": "t"}]), executor=RaisingExecutor(), max_retries_override=0)

    orch.run()

    record = orch.state.records["t"]
    assert record.status == TaskStatus.ESCALATED
    assert record.attempts == 1
    assert "RuntimeError: executor crashed" in record.last_error


def test_task_past_deadline_is_failed(tmp_path: Path) -> None:
    plan = _plan([{"id": "slow", "metadata": {"scripted_results": [{"delay_seconds": 0.5}]}}])
    orch = _start(tmp_path, plan, task_timeout_seconds=0.05, max_retries_override=0)

    orch.run()

    record = orch.state.records["slow"]
    assert record.status == TaskStatus.ESCALATED
    assert "timed out" in record.last_error


# ---------------------------------------------------------------------------
# Decisions and rollback
# ---------------------------------------------------------------------------


def test_rollback_restores_workspace(tmp_path: Path) -> None:
    (tmp_path / "existing.txt").write_text("original", encoding="utf-8")
    (tmp_path / "doomed.txt").write_text("keep me", encoding="utf-8")
    script = [{"write": {"existing.txt": "changed", "new.txt": "fresh"}, "delete": ["doomed.txt"]}]
    plan = _plan([{"id": "t1", "metadata": {"scripted_results": script}}])
    orch = _start(tmp_path, plan, decider=ScriptedDecider(["rollback"]))

    report = orch.run()

    assert (tmp_path / "existing.txt").read_text(encoding="utf-8") == "original"
    assert (tmp_path / "doomed.txt").read_text(encoding="utf-8") == "keep me"
    assert not (tmp_path / "new.txt").exists()
    record = orch.state.records["t1"]
    assert record.status == TaskStatus.PENDING
    assert record.attempts == 1
    assert orch.state.checkpoint_index == 0
    assert report.run_status == RunStatus.PAUSED
    assert report.checkpoints[-1]["decision"] == "rollback"


def test_rollback_returns_to_end_of_previous_checkpoint(tmp_path: Path) -> None:
    decls = [
        {"id": "a", "metadata": {"scripted_results": [{"write": {"f.txt": "from a"}}]}},
        {
            "id": "b",
            "dependencies": ["a"],
            "metadata": {"scripted_results": [{"write": {"f.txt": "from b", "g.txt": "from b"}}]},
        },
    ]
    orch = _start(tmp_path, _plan(decls), decider=ScriptedDecider(["continue", "rollback"]), batch_size=1)

    orch.run()

    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "from a"
    assert not (tmp_path / "g.txt").exists()
    assert orch.state.status_of("a") == TaskStatus.COMPLETED
    assert orch.state.status_of("b") == TaskStatus.PENDING
    assert orch.state.checkpoint_index == 1


def test_deferred_decision_then_resume(tmp_path: Path) -> None:
    plan = _plan([{"id": "a"}])
    store = RunStore(tmp_path, plan.id)
    orch = _start(tmp_path, plan, decider=DeferredDecider())

    report = orch.run()

    assert report.awaiting_decision == 1
    assert report.run_status == RunStatus.PAUSED
    assert store.load_checkpoint().awaiting_decision

    store.record_decision("continue")
    resumed = Orchestrator.resume(store, _registry(), settings=_settings())
    final = resumed.run()

    assert final.overall_status == OverallStatus.SUCCESS
    assert final.awaiting_decision is None
    checkpoint = store.load_checkpoint()
    assert checkpoint.decision == CheckpointDecision.CONTINUE
    assert checkpoint.applied
    assert [cp.index for cp in store.history()] == [1]


def test_resume_with_decision_argument(tmp_path: Path) -> None:
    (tmp_path / "keep.txt").write_text("v1", encoding="utf-8")
    plan = _plan([{"id": "a", "metadata": {"scripted_results": [{"write": {"keep.txt": "v2"}}]}}])
    store = RunStore(tmp_path, plan.id)
    _start(tmp_path, plan, decider=DeferredDecider()).run()

    resumed = Orchestrator.resume(store, _registry(), settings=_settings(), decision="rollback")
    report = resumed.run()

    assert (tmp_path / "keep.txt").read_text(encoding="utf-8") == "v1"
    assert report.run_status == RunStatus.PAUSED
    assert resumed.state.status_of("a") == TaskStatus.PENDING


def test_decision_without_waiting_checkpoint_is_rejected(tmp_path: Path) -> None:
    plan = _plan([{"id": "a"}])
    store = RunStore(tmp_path, plan.id)
    _start(tmp_path, plan).run()

    with pytest.raises(StateStoreError):
        Orchestrator.resume(store, _registry(), decision="continue")
    with pytest.raises(StateStoreError):
        store.record_decision("continue")


def test_pause_decision_then_resume(tmp_path: Path) -> None:
    plan = _plan([{"id": "a"}, {"id": "b"}])
    store = RunStore(tmp_path, plan.id)
    orch = _start(tmp_path, plan, decider=ScriptedDecider(["pause"]), batch_size=1)

    report = orch.run()

    assert report.run_status == RunStatus.PAUSED
    assert report.overall_status == OverallStatus.PARTIAL
    assert report.counts["completed"] == 1

    final = Orchestrator.resume(store, _registry(), settings=_settings(batch_size=1)).run()

    assert final.overall_status == OverallStatus.SUCCESS
    assert [cp["decision"] for cp in final.checkpoints] == ["pause", "continue"]


def test_abort_rolls_back_open_batch(tmp_path: Path) -> None:
    executor = AbortingExecutor()
    plan = _plan([{"id": "a"}, {"id": "b", "dependencies": ["a"]}])
    orch = _start(tmp_path, plan, executor=executor)
    executor.orchestrator = orch

    report = orch.run()

    assert report.run_status == RunStatus.ABORTED
    assert report.overall_status == OverallStatus.FAILED
    assert not (tmp_path / "a.txt").exists()
    assert orch.state.status_of("a") == TaskStatus.PENDING
    assert orch.state.status_of("b") == TaskStatus.PENDING


def test_stop_requests_are_logged_by_the_run_loop(tmp_path: Path) -> None:
    orch = _start(tmp_path, _plan([{"id": "a"}]))
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    try:
        orch.request_abort()
        orch.request_pause()
        assert messages == []

        report = orch.run()
    finally:
        logger.remove(handler_id)

    assert report.run_status == RunStatus.ABORTED
    assert messages.count("Abort requested for plan run") == 1
    assert not any(message.startswith("Pause requested") for message in messages)


def test_auto_continue_skips_the_decider_for_clean_batches(tmp_path: Path) -> None:
    decider = ScriptedDecider([])
    orch = _start(tmp_path, _plan(_independent(3)), decider=decider, auto_continue=True)

    report = orch.run()

    assert report.overall_status == OverallStatus.SUCCESS
    assert decider.seen == []


def test_failures_force_a_decision_even_with_auto_continue(tmp_path: Path) -> None:
    script = [{"status": "failed", "error": "once"}, {"status": "completed"}]
    decider = ScriptedDecider(["continue"])
    orch = _start(
        tmp_path,
        _plan([{"id": "t", "metadata": {"scripted_results": script}}]),
        decider=decider,
        auto_continue=True,
    )

    report = orch.run()

    assert decider.seen == [1]
    assert report.overall_status == OverallStatus.SUCCESS


# ---------------------------------------------------------------------------
# Construction and recovery
# ---------------------------------------------------------------------------


def test_unvalidated_plan_is_rejected(tmp_path: Path) -> None:
    plan = build_plan([{"id": "a"}], plan_id="raw")

    with pytest.raises(ValueError):
        Orchestrator(plan, _registry(), workspace=tmp_path)


def test_second_start_for_same_plan_is_rejected(tmp_path: Path) -> None:
    plan = _plan([{"id": "a"}])
    _start(tmp_path, plan)

    with pytest.raises(StateStoreError):
        _start(tmp_path, plan)


def test_resume_recovers_interrupted_tasks(tmp_path: Path) -> None:
    plan = _plan([{"id": "a"}])
    store = RunStore(tmp_path, plan.id)
    _start(tmp_path, plan)
    state = store.load_state()
    state.transition("a", TaskStatus.RUNNING)
    state.records["a"].attempts = 1
    store.save_state(state)

    resumed = Orchestrator.resume(store, _registry(), settings=_settings())

    assert resumed.state.status_of("a") == TaskStatus.PENDING
    assert resumed.state.records["a"].last_error == "Recovered from interrupted run"
    report = resumed.run()
    assert report.overall_status == OverallStatus.SUCCESS
    assert resumed.state.records["a"].attempts == 2


def test_resume_can_retry_escalated_tasks(tmp_path: Path) -> None:
    script = {"1": {"status": "failed", "error": "first"}, "default": {"status": "completed"}}
    plan = _plan([{"id": "a", "metadata": {"scripted_results": script}}])
    store = RunStore(tmp_path, plan.id)
    first = _start(tmp_path, plan, max_retries_override=0).run()
    assert first.overall_status == OverallStatus.FAILED

    resumed = Orchestrator.resume(store, _registry(), settings=_settings(), retry_escalated=True)
    report = resumed.run()

    assert report.overall_status == OverallStatus.SUCCESS
    assert resumed.state.records["a"].attempts == 2
    assert report.escalations == []
