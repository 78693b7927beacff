"""Execute a validated plan under a concurrency cap with checkpoints.

One coordinating loop owns the ExecutionState. Ready tasks are submitted
to a thread pool; finished futures are merged back one at a time on the
loop thread, so executors never touch shared state.

Dispatch is throttled by two caps: at most ``concurrency`` tasks in flight,
and in-flight plus completed-in-batch never above ``batch_size``. When a
batch fills, nothing is in flight, so the batch snapshot is exact.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .checkpoints import CheckpointManager
from .config import OrchestratorSettings
from .constants import SNAPSHOTS_DIR, STATE_DIR_NAME
from .decisions import AutoDecider, DecisionProvider, parse_decision
from .errors import DecisionRequired, EscalationRequired, RollbackError, StateStoreError, TaskExecutionError
from .executors import ExecutorRegistry
from .models import (
    Checkpoint,
    CheckpointDecision,
    ExecutionState,
    OverallStatus,
    Plan,
    RunStatus,
    Task,
    TaskRecord,
    TaskResult,
    TaskStatus,
)
from .progress import ProgressJournal
from .store import RunStore
from .utils import _now_iso


@dataclass
class RunReport:
    plan_id: str
    overall_status: OverallStatus
    run_status: RunStatus
    counts: dict[str, int]
    checkpoints: list[dict[str, Any]] = field(default_factory=list)
    escalations: list[dict[str, Any]] = field(default_factory=list)
    awaiting_decision: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "overall_status": self.overall_status.value,
            "run_status": self.run_status.value,
            "counts": dict(self.counts),
            "checkpoints": list(self.checkpoints),
            "escalations": list(self.escalations),
            "awaiting_decision": self.awaiting_decision,
        }


@dataclass
class _InFlight:
    task_id: str
    attempt: int
    future: Future
    deadline: float


class Orchestrator:
    """Schedule a validated plan, apply retry policy and drive checkpoints."""

    def __init__(
        self,
        plan: Plan,
        registry: ExecutorRegistry,
        *,
        workspace: Path,
        store: Optional[RunStore] = None,
        settings: Optional[OrchestratorSettings] = None,
        decider: Optional[DecisionProvider] = None,
        progress: Optional[ProgressJournal] = None,
        state: Optional[ExecutionState] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> None:
        if not plan.validated:
            raise ValueError(f"Plan {plan.id} must pass validation before execution")
        self.plan = plan
        self.registry = registry
        self.workspace = workspace.resolve()
        self.store = store
        self.settings = settings or OrchestratorSettings()
        self.decider: DecisionProvider = decider or AutoDecider()
        self.max_retries = self.settings.max_retries_for(plan.complexity_tier)
        self.state = state or ExecutionState.for_plan(plan)
        for task_id in plan.tasks:
            self.state.records.setdefault(task_id, TaskRecord())

        snapshots_dir = store.snapshots_dir if store else self.workspace / STATE_DIR_NAME / SNAPSHOTS_DIR
        self.checkpoints = CheckpointManager(
            self.workspace,
            snapshots_dir,
            batch_size=self.settings.batch_size,
            ignore=self.settings.snapshot_ignore,
            current=checkpoint,
        )
        if progress is None and store is not None:
            progress = ProgressJournal(store.events_path, store.summary_path, title=f"Task Progress: {plan.id}")
        self.progress = progress
        self.history: list[Checkpoint] = store.history() if store else []

        self._group_index = plan.group_index()
        self._inflight: dict[str, _InFlight] = {}
        self._abandoned: list[Future] = []
        self._abort = threading.Event()
        self._pause = threading.Event()
        self._halt: Optional[str] = None
        self._stop_logged = False

    # -- control ------------------------------------------------------------

    def request_abort(self) -> None:
        """Stop dispatch, drain in-flight tasks, then roll back the unfinalized batch.

        Only sets an event, so it is safe to call from a signal handler.
        """
        self._abort.set()

    def request_pause(self) -> None:
        """Stop dispatch and drain; the run stays resumable."""
        self._pause.set()

    def _log_stop_request(self) -> None:
        if self._stop_logged:
            return
        self._stop_logged = True
        if self._abort.is_set():
            logger.warning("Abort requested for plan {}", self.plan.id)
        else:
            logger.info("Pause requested for plan {}", self.plan.id)

    @property
    def _stopping(self) -> bool:
        return self._abort.is_set() or self._pause.is_set()

    # -- persistence --------------------------------------------------------

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.save_state(self.state)
        self.store.save_checkpoint(self.checkpoints.current)

    def _journal(self, event: str, **payload: Any) -> None:
        if self.progress is not None:
            self.progress.record(event, plan_id=self.plan.id, **payload)

    # -- scheduling ---------------------------------------------------------

    def ready_tasks(self) -> list[str]:
        """Pending or retrying tasks whose dependencies are all completed."""
        records = self.state.records
        ready = [
            task_id
            for task_id, task in self.plan.tasks.items()
            if records[task_id].status in (TaskStatus.PENDING, TaskStatus.RETRYING)
            and task_id not in self._inflight
            and all(records[dep].status == TaskStatus.COMPLETED for dep in task.dependencies)
        ]
        return sorted(ready, key=lambda task_id: (self._group_index.get(task_id, 0), task_id))

    def _dispatch(self, pool: ThreadPoolExecutor) -> int:
        started = 0
        for task_id in self.ready_tasks():
            if len(self._inflight) >= self.settings.concurrency:
                break
            if self.checkpoints.completed_in_batch() + len(self._inflight) >= self.settings.batch_size:
                break
            if not self.checkpoints.is_open:
                self.state.checkpoint_index += 1
                self.checkpoints.open_batch(self.state.checkpoint_index)
                self._journal("checkpoint_opened", index=self.state.checkpoint_index)
            self._start(pool, self.plan.tasks[task_id])
            started += 1
        return started

    def _start(self, pool: ThreadPoolExecutor, task: Task) -> None:
        record = self.state.transition(task.id, TaskStatus.RUNNING)
        record.attempts += 1
        record.started_at = _now_iso()
        record.finished_at = None
        attempt = record.attempts
        self._persist()
        if self.progress is not None:
            self.progress.task_started(task, attempt)
        logger.info("Dispatching {} to {} (attempt {})", task.id, task.executor_ref.value, attempt)
        future = pool.submit(self._execute, task, attempt)
        self._inflight[task.id] = _InFlight(
            task_id=task.id,
            attempt=attempt,
            future=future,
            deadline=time.monotonic() + self.settings.task_timeout_seconds,
        )

    def _execute(self, task: Task, attempt: int) -> TaskResult:
        """Run one attempt on a worker thread. Executor errors become failed results."""
        try:
            executor = self.registry.get(task.executor_ref)
            result = executor.execute(task=task, attempt=attempt, workspace=self.workspace)
        except Exception as exc:
            error = TaskExecutionError(task.id, attempt, f"{exc.__class__.__name__}: {exc}")
            logger.opt(exception=exc).debug("Executor raised for {}", task.id)
            return TaskResult.failure(error.message)
        if not isinstance(result, TaskResult):
            return TaskResult.failure(f"Executor returned {type(result).__name__}, expected TaskResult")
        return result

    def _collect(self) -> None:
        now = time.monotonic()
        for task_id, entry in list(self._inflight.items()):
            if entry.future.done():
                del self._inflight[task_id]
                self._merge(task_id, entry.attempt, entry.future.result())
            elif now > entry.deadline:
                del self._inflight[task_id]
                self._abandoned.append(entry.future)
                logger.warning("Task {} attempt {} exceeded its deadline", task_id, entry.attempt)
                self._merge(
                    task_id,
                    entry.attempt,
                    TaskResult.failure(f"timed out after {self.settings.task_timeout_seconds:g}s"),
                )

    def _merge(self, task_id: str, attempt: int, result: TaskResult) -> None:
        record = self.state.records[task_id]
        record.finished_at = _now_iso()
        self.checkpoints.record(task_id, attempt, result)
        record.checkpoint_index = self.checkpoints.current.index
        if self.progress is not None:
            self.progress.task_stopped(task_id, attempt, result)

        if result.ok:
            self.state.transition(task_id, TaskStatus.COMPLETED)
            record.last_error = None
            logger.info("Task {} completed (attempt {})", task_id, attempt)
        else:
            self.state.transition(task_id, TaskStatus.FAILED)
            record.last_error = result.error or "failed"
            logger.warning("Task {} failed on attempt {}: {}", task_id, attempt, record.last_error)
            if record.retry_count < self.max_retries:
                self.state.transition(task_id, TaskStatus.RETRYING)
                record.retry_count += 1
                logger.info("Retrying {} ({}/{})", task_id, record.retry_count, self.max_retries)
            else:
                self.state.transition(task_id, TaskStatus.ESCALATED)
                escalation = EscalationRequired(
                    f"Task {task_id} failed after {record.retry_count} retries",
                    task_id=task_id,
                    attempts=record.attempts,
                    retry_count=record.retry_count,
                    last_error=record.last_error,
                )
                self.state.escalations.append(escalation.to_dict())
                logger.error("{}: {}", escalation.message, record.last_error)
                self._journal("escalation", **escalation.to_dict())
        self._persist()

    # -- checkpoints --------------------------------------------------------

    def _close_checkpoint(self, *, forced: bool) -> bool:
        checkpoint = self.checkpoints.close(forced=forced)
        self._persist()
        self._journal(
            "checkpoint_closed",
            index=checkpoint.index,
            task_ids=list(checkpoint.task_ids),
            forced=forced,
            fully_passing=checkpoint.summary.fully_passing,
        )
        return self._resolve_checkpoint()

    def _resolve_checkpoint(self) -> bool:
        """Decide the checkpoint awaiting a decision. Returns True to keep running."""
        checkpoint = self.checkpoints.current
        decision = checkpoint.decision
        if decision is None:
            if not self.checkpoints.needs_decision(checkpoint, self.settings.auto_continue):
                logger.info("Checkpoint {} fully passing; continuing automatically", checkpoint.index)
                decision = CheckpointDecision.CONTINUE
            else:
                decision = self.decider.decide(checkpoint)
        if decision is None:
            pending = DecisionRequired(self.plan.id, checkpoint.index)
            logger.warning(pending.message)
            self._journal("decision_required", index=checkpoint.index)
            self._halt = "awaiting_decision"
            return False
        return self._apply_decision(decision)

    def _apply_decision(self, decision: CheckpointDecision) -> bool:
        checkpoint = self.checkpoints.current
        if decision == CheckpointDecision.ROLLBACK:
            self._rollback_current()
            self._halt = "rolled_back"
        else:
            self.checkpoints.finalize(decision)
            self.history.append(checkpoint)
            if self.store is not None:
                self.store.append_history(checkpoint)
            if decision == CheckpointDecision.PAUSE:
                self._halt = "paused"
        self._persist()
        self._journal("checkpoint_decision", index=checkpoint.index, decision=decision.value)
        logger.info("Checkpoint {} decision: {}", checkpoint.index, decision.value)
        return decision == CheckpointDecision.CONTINUE

    def _rollback_current(self) -> None:
        checkpoint = self.checkpoints.current
        reset_ids = self.checkpoints.rollback()
        for task_id in reset_ids:
            self._reset_task(task_id)
        self.state.checkpoint_index = checkpoint.index - 1
        self.history.append(checkpoint)
        if self.store is not None:
            self.store.append_history(checkpoint)

    def _reset_task(self, task_id: str) -> None:
        record = self.state.records[task_id]
        if record.status != TaskStatus.PENDING:
            self.state.transition(task_id, TaskStatus.PENDING)
        record.retry_count = 0
        record.last_error = None
        record.started_at = None
        record.finished_at = None
        record.checkpoint_index = None
        self.state.escalations = [e for e in self.state.escalations if e.get("task_id") != task_id]

    # -- main loop ----------------------------------------------------------

    def run(self) -> RunReport:
        """Run until the plan finishes, halts, pauses or is aborted.

        Raises:
            RollbackError: If a rollback cannot revert a side effect. The run
                is marked aborted before the error propagates.
        """
        self._halt = None
        self.state.run_status = RunStatus.RUNNING
        self.state.overall_status = OverallStatus.RUNNING
        self._persist()
        logger.info(
            "Running plan {} ({} tasks, concurrency {}, batch size {}, max retries {})",
            self.plan.id,
            len(self.plan.tasks),
            self.settings.concurrency,
            self.settings.batch_size,
            self.max_retries,
        )

        try:
            current = self.checkpoints.current
            if current is not None and current.awaiting_decision and not self._abort.is_set():
                if not self._resolve_checkpoint():
                    return self._finish()

            pool = ThreadPoolExecutor(max_workers=self.settings.concurrency, thread_name_prefix="plan-task")
            try:
                self._loop(pool)
            finally:
                pool.shutdown(wait=not self._abandoned, cancel_futures=True)
            return self._finish()
        except RollbackError as exc:
            self.state.run_status = RunStatus.ABORTED
            self.state.overall_status = OverallStatus.FAILED
            self._persist()
            logger.error("Plan {} aborted: {}", self.plan.id, exc.message)
            raise

    def _loop(self, pool: ThreadPoolExecutor) -> None:
        while True:
            self._collect()
            if self._stopping:
                self._log_stop_request()
            if self.checkpoints.should_close():
                if self._abort.is_set() or not self._close_checkpoint(forced=False):
                    return
                continue
            if self._stopping:
                if not self._inflight:
                    return
            else:
                self._dispatch(pool)
                if not self._inflight:
                    checkpoint = self.checkpoints.current
                    if self.checkpoints.is_open and checkpoint.task_ids:
                        if not self._close_checkpoint(forced=True):
                            return
                        continue
                    return
            wait(
                [entry.future for entry in self._inflight.values()],
                timeout=self.settings.poll_seconds,
                return_when=FIRST_COMPLETED,
            )

    def _finish(self) -> RunReport:
        state = self.state
        if self._abort.is_set():
            current = self.checkpoints.current
            state.run_status = RunStatus.ABORTED
            state.overall_status = OverallStatus.FAILED
            if current is not None and not current.applied:
                try:
                    self._rollback_current()
                finally:
                    self._persist()
            logger.warning("Plan {} aborted", self.plan.id)
        else:
            completed = len(state.ids_with_status(TaskStatus.COMPLETED))
            awaiting = self.checkpoints.current is not None and self.checkpoints.current.awaiting_decision
            if completed == len(self.plan.tasks) and not awaiting:
                state.run_status = RunStatus.FINISHED
                state.overall_status = OverallStatus.SUCCESS
            elif self._halt is not None or self._pause.is_set():
                state.run_status = RunStatus.PAUSED
                state.overall_status = OverallStatus.PARTIAL
            else:
                # No ready task left: the rest is escalated or blocked behind an escalation.
                state.run_status = RunStatus.PAUSED
                state.overall_status = OverallStatus.PARTIAL if completed else OverallStatus.FAILED
        self._persist()
        self._journal("run_finished", run_status=state.run_status.value, overall_status=state.overall_status.value)
        logger.info(
            "Plan {} {} ({}): {}",
            self.plan.id,
            state.run_status.value,
            state.overall_status.value,
            state.counts(),
        )
        return self.report()

    def report(self) -> RunReport:
        current = self.checkpoints.current
        awaiting = current.index if current is not None and current.awaiting_decision else None
        return RunReport(
            plan_id=self.plan.id,
            overall_status=self.state.overall_status,
            run_status=self.state.run_status,
            counts=self.state.counts(),
            checkpoints=[checkpoint.to_dict() for checkpoint in self.history],
            escalations=list(self.state.escalations),
            awaiting_decision=awaiting,
        )

    # -- construction -------------------------------------------------------

    @classmethod
    def start(
        cls,
        plan: Plan,
        registry: ExecutorRegistry,
        *,
        store: RunStore,
        workspace: Optional[Path] = None,
        settings: Optional[OrchestratorSettings] = None,
        decider: Optional[DecisionProvider] = None,
    ) -> "Orchestrator":
        """Create a fresh persisted run for *plan*.

        Raises:
            StateStoreError: If a run for this plan id already exists.
        """
        if store.exists():
            raise StateStoreError(f"A run for plan {plan.id} already exists; use resume")
        store.save_plan(plan)
        orchestrator = cls(
            plan,
            registry,
            workspace=workspace or store.project_dir,
            store=store,
            settings=settings,
            decider=decider,
        )
        orchestrator._persist()
        return orchestrator

    @classmethod
    def resume(
        cls,
        store: RunStore,
        registry: ExecutorRegistry,
        *,
        workspace: Optional[Path] = None,
        settings: Optional[OrchestratorSettings] = None,
        decider: Optional[DecisionProvider] = None,
        decision: Optional[CheckpointDecision | str] = None,
        retry_escalated: bool = False,
    ) -> "Orchestrator":
        """Reload a persisted run.

        Tasks left ``running`` by an interrupted process go back to
        ``pending``. ``retry_escalated`` gives escalated tasks a fresh retry
        budget. ``decision`` answers a checkpoint awaiting one.
        """
        plan = store.load_plan()
        state = store.load_state()
        if plan is None or state is None:
            raise StateStoreError(f"No persisted run for plan {store.plan_id}")
        checkpoint = store.load_checkpoint()

        for task_id in state.ids_with_status(TaskStatus.RUNNING):
            state.transition(task_id, TaskStatus.PENDING)
            state.records[task_id].last_error = "Recovered from interrupted run"
            logger.info("Recovered interrupted task {}", task_id)
        if retry_escalated:
            for task_id in state.ids_with_status(TaskStatus.ESCALATED):
                state.transition(task_id, TaskStatus.PENDING)
                state.records[task_id].retry_count = 0
            state.escalations = []
        if decision is not None:
            if checkpoint is None or not checkpoint.awaiting_decision:
                raise StateStoreError(f"Plan {plan.id} has no checkpoint awaiting a decision")
            checkpoint.decision = parse_decision(decision)
            checkpoint.decided_at = _now_iso()

        return cls(
            plan,
            registry,
            workspace=workspace or store.project_dir,
            store=store,
            settings=settings,
            decider=decider,
            state=state,
            checkpoint=checkpoint,
        )
