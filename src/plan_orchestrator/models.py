"""Define plan, task, validation, execution-state and checkpoint models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from .constants import RUBRIC_CATEGORIES, RUBRIC_MAX_CATEGORY_SCORE
from .errors import InvalidTransitionError, MalformedTaskError
from .utils import _now_iso, _str_list, _unique


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskKind(str, Enum):
    """The kind of change a task makes."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    REFACTOR = "refactor"
    TEST = "test"
    CONFIG = "config"
    DOC = "doc"


class ExecutorKind(str, Enum):
    """Capability a task is routed to. Keys the executor registry."""

    BACKEND = "backend"
    FRONTEND = "frontend"
    DATA = "data"
    DATABASE = "database"
    INFRA = "infra"
    INTEGRATION = "integration"
    ML = "ml"
    TESTING = "testing"
    DOCS = "docs"
    GENERIC = "generic"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    ESCALATED = "escalated"


class ResultStatus(str, Enum):
    """Status reported by an executor for one attempt."""

    COMPLETED = "completed"
    FAILED = "failed"


class ComplexityTier(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class OverallStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ABORTED = "aborted"
    FINISHED = "finished"


class CheckpointDecision(str, Enum):
    """Closed set of answers accepted at a checkpoint boundary."""

    CONTINUE = "continue"
    ROLLBACK = "rollback"
    PAUSE = "pause"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RETRYING: frozenset({TaskStatus.RUNNING, TaskStatus.PENDING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.RETRYING, TaskStatus.ESCALATED, TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.ESCALATED: frozenset({TaskStatus.PENDING}),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS.get(current, frozenset())


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except (ValueError, KeyError):
        return default


# ---------------------------------------------------------------------------
# Task / Plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Task:
    """A declared unit of work. Immutable; runtime status lives in ExecutionState."""

    id: str
    kind: TaskKind = TaskKind.MODIFY
    description: str = ""
    executor_ref: ExecutorKind = ExecutorKind.GENERIC
    dependencies: tuple[str, ...] = ()
    duration_estimate: float = 0.0
    acceptance_criteria: tuple[str, ...] = ()
    requirements: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "description": self.description,
            "executor": self.executor_ref.value,
            "dependencies": list(self.dependencies),
            "duration_estimate": self.duration_estimate,
            "acceptance_criteria": list(self.acceptance_criteria),
            "requirements": list(self.requirements),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a task from a declaration or a persisted payload.

        Accepts ``executor`` or ``executor_ref`` and ``dependencies`` or ``deps``.

        Raises:
            MalformedTaskError: If the kind or executor is not a known value,
                or the duration is not a non-negative number.
        """
        task_id = str(data.get("id") or "").strip()
        try:
            kind = TaskKind(str(data.get("kind") or TaskKind.MODIFY.value))
        except ValueError:
            raise MalformedTaskError(task_id, f"unknown kind {data.get('kind')!r}") from None
        executor_raw = data.get("executor", data.get("executor_ref")) or ExecutorKind.GENERIC.value
        try:
            executor = ExecutorKind(str(executor_raw))
        except ValueError:
            raise MalformedTaskError(task_id, f"unknown executor {executor_raw!r}") from None
        try:
            duration = float(data.get("duration_estimate") or 0.0)
        except (TypeError, ValueError):
            raise MalformedTaskError(task_id, "duration_estimate must be a number") from None
        if duration < 0:
            raise MalformedTaskError(task_id, "duration_estimate must be >= 0")
        deps = data.get("dependencies", data.get("deps"))
        metadata = data.get("metadata")
        return cls(
            id=task_id,
            kind=kind,
            description=str(data.get("description") or ""),
            executor_ref=executor,
            dependencies=tuple(_unique(_str_list(deps))),
            duration_estimate=duration,
            acceptance_criteria=tuple(_str_list(data.get("acceptance_criteria"))),
            requirements=tuple(_unique(_str_list(data.get("requirements")))),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class Requirement:
    id: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "description": self.description}


@dataclass(frozen=True)
class ValidationResult:
    """Rubric outcome for one plan revision."""

    scores: dict[str, int] = field(default_factory=dict, hash=False)
    threshold: Optional[int] = None
    tier: ComplexityTier = ComplexityTier.MODERATE
    skipped: bool = False
    issues: tuple[str, ...] = ()
    iteration: int = 0

    def __post_init__(self) -> None:
        for name, value in self.scores.items():
            if name not in RUBRIC_CATEGORIES:
                raise ValueError(f"Unknown rubric category: {name}")
            if not 0 <= int(value) <= RUBRIC_MAX_CATEGORY_SCORE:
                raise ValueError(f"Score for {name} must be within [0, {RUBRIC_MAX_CATEGORY_SCORE}]: {value}")

    @property
    def overall_score(self) -> int:
        return sum(int(v) for v in self.scores.values())

    @property
    def passed(self) -> bool:
        if self.skipped or self.threshold is None:
            return True
        return self.overall_score >= self.threshold

    @classmethod
    def skipped_for(cls, tier: ComplexityTier) -> "ValidationResult":
        return cls(tier=tier, skipped=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": {name: int(self.scores.get(name, 0)) for name in RUBRIC_CATEGORIES} if self.scores else {},
            "overall_score": self.overall_score,
            "threshold": self.threshold,
            "tier": self.tier.value,
            "passed": self.passed,
            "skipped": self.skipped,
            "issues": list(self.issues),
            "iteration": self.iteration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationResult":
        scores = data.get("scores") if isinstance(data.get("scores"), dict) else {}
        threshold = data.get("threshold")
        return cls(
            scores={str(k): int(v) for k, v in scores.items()},
            threshold=int(threshold) if threshold is not None else None,
            tier=_coerce_enum(ComplexityTier, data.get("tier"), ComplexityTier.MODERATE),
            skipped=bool(data.get("skipped", False)),
            issues=tuple(_str_list(data.get("issues"))),
            iteration=int(data.get("iteration") or 0),
        )


@dataclass(frozen=True)
class Plan:
    """A layered, schedulable task graph. Revisions get ``-R<n>`` ids."""

    id: str
    tasks: dict[str, Task] = field(default_factory=dict, hash=False)
    parallel_groups: tuple[tuple[str, ...], ...] = ()
    critical_path: tuple[str, ...] = ()
    complexity_tier: ComplexityTier = ComplexityTier.SIMPLE
    complexity_score: float = 0.0
    validation: Optional[ValidationResult] = None
    requirements: tuple[Requirement, ...] = ()
    revision: int = 0
    base_id: str = ""

    @property
    def validated(self) -> bool:
        return self.validation is not None and self.validation.passed

    def with_validation(self, result: ValidationResult) -> "Plan":
        if self.validated:
            raise ValueError(f"Plan {self.id} is already validated and immutable")
        return replace(self, validation=result)

    def group_index(self) -> dict[str, int]:
        return {task_id: idx for idx, group in enumerate(self.parallel_groups) for task_id in group}

    def dependents(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {task_id: [] for task_id in self.tasks}
        for task in self.tasks.values():
            for dep in task.dependencies:
                if dep in out:
                    out[dep].append(task.id)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "base_id": self.base_id or self.id,
            "revision": self.revision,
            "complexity_tier": self.complexity_tier.value,
            "complexity_score": self.complexity_score,
            "parallel_groups": [list(group) for group in self.parallel_groups],
            "critical_path": list(self.critical_path),
            "requirements": [req.to_dict() for req in self.requirements],
            "validation": self.validation.to_dict() if self.validation else None,
            "tasks": [task.to_dict() for task in self.tasks.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        tasks = [Task.from_dict(item) for item in data.get("tasks") or [] if isinstance(item, dict)]
        validation = data.get("validation")
        requirements = [
            Requirement(id=str(item.get("id")), description=str(item.get("description") or ""))
            for item in data.get("requirements") or []
            if isinstance(item, dict) and item.get("id")
        ]
        return cls(
            id=str(data.get("id") or ""),
            base_id=str(data.get("base_id") or data.get("id") or ""),
            revision=int(data.get("revision") or 0),
            tasks={task.id: task for task in tasks},
            parallel_groups=tuple(tuple(str(i) for i in group) for group in data.get("parallel_groups") or []),
            critical_path=tuple(_str_list(data.get("critical_path"))),
            complexity_tier=_coerce_enum(ComplexityTier, data.get("complexity_tier"), ComplexityTier.SIMPLE),
            complexity_score=float(data.get("complexity_score") or 0.0),
            validation=ValidationResult.from_dict(validation) if isinstance(validation, dict) else None,
            requirements=tuple(requirements),
        )


# ---------------------------------------------------------------------------
# Executor results
# ---------------------------------------------------------------------------

@dataclass
class TestSummary:
    __test__ = False  # not a pytest class

    passed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def fully_passing(self) -> bool:
        return self.failed == 0

    def merge(self, other: "TestSummary") -> "TestSummary":
        return TestSummary(
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )

    def to_dict(self) -> dict[str, int]:
        return {"passed": self.passed, "failed": self.failed, "skipped": self.skipped}

    @classmethod
    def from_dict(cls, data: Any) -> "TestSummary":
        if not isinstance(data, dict):
            return cls()
        return cls(
            passed=int(data.get("passed") or 0),
            failed=int(data.get("failed") or 0),
            skipped=int(data.get("skipped") or 0),
        )


@dataclass
class TaskResult:
    """Structured outcome an executor reports for one attempt."""

    status: ResultStatus = ResultStatus.COMPLETED
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    test_summary: TestSummary = field(default_factory=TestSummary)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.COMPLETED

    @classmethod
    def failure(cls, error: str) -> "TaskResult":
        return cls(status=ResultStatus.FAILED, error=error)

    def touched_files(self) -> list[str]:
        return _unique([*self.files_created, *self.files_modified, *self.files_deleted])

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "test_summary": self.test_summary.to_dict(),
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        return cls(
            status=_coerce_enum(ResultStatus, data.get("status"), ResultStatus.FAILED),
            files_created=_str_list(data.get("files_created")),
            files_modified=_str_list(data.get("files_modified")),
            files_deleted=_str_list(data.get("files_deleted")),
            test_summary=TestSummary.from_dict(data.get("test_summary")),
            error=data.get("error"),
            duration_seconds=float(data.get("duration_seconds") or 0.0),
        )


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------

@dataclass
class TaskRecord:
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    retry_count: int = 0
    last_error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    checkpoint_index: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "checkpoint_index": self.checkpoint_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        checkpoint_index = data.get("checkpoint_index")
        return cls(
            status=_coerce_enum(TaskStatus, data.get("status"), TaskStatus.PENDING),
            attempts=int(data.get("attempts") or 0),
            retry_count=int(data.get("retry_count") or 0),
            last_error=data.get("last_error"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            checkpoint_index=int(checkpoint_index) if checkpoint_index is not None else None,
        )


@dataclass
class ExecutionState:
    """Per-plan mutable run record. Only the Orchestrator mutates it."""

    plan_id: str
    records: dict[str, TaskRecord] = field(default_factory=dict)
    checkpoint_index: int = 0
    overall_status: OverallStatus = OverallStatus.RUNNING
    run_status: RunStatus = RunStatus.IDLE
    escalations: list[dict[str, Any]] = field(default_factory=list)
    updated_at: str = field(default_factory=_now_iso)

    @classmethod
    def for_plan(cls, plan: Plan) -> "ExecutionState":
        return cls(plan_id=plan.id, records={task_id: TaskRecord() for task_id in plan.tasks})

    def status_of(self, task_id: str) -> TaskStatus:
        return self.records[task_id].status

    def transition(self, task_id: str, target: TaskStatus) -> TaskRecord:
        record = self.records[task_id]
        if not can_transition(record.status, target):
            raise InvalidTransitionError(task_id, record.status.value, target.value)
        record.status = target
        self.updated_at = _now_iso()
        return record

    def ids_with_status(self, *statuses: TaskStatus) -> list[str]:
        wanted = set(statuses)
        return [task_id for task_id, record in self.records.items() if record.status in wanted]

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in TaskStatus}
        for record in self.records.values():
            out[record.status.value] += 1
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "records": {task_id: record.to_dict() for task_id, record in self.records.items()},
            "checkpoint_index": self.checkpoint_index,
            "overall_status": self.overall_status.value,
            "run_status": self.run_status.value,
            "escalations": list(self.escalations),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionState":
        records = data.get("records") if isinstance(data.get("records"), dict) else {}
        escalations = data.get("escalations")
        return cls(
            plan_id=str(data.get("plan_id") or ""),
            records={str(k): TaskRecord.from_dict(v) for k, v in records.items() if isinstance(v, dict)},
            checkpoint_index=int(data.get("checkpoint_index") or 0),
            overall_status=_coerce_enum(OverallStatus, data.get("overall_status"), OverallStatus.RUNNING),
            run_status=_coerce_enum(RunStatus, data.get("run_status"), RunStatus.IDLE),
            escalations=list(escalations) if isinstance(escalations, list) else [],
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

@dataclass
class CheckpointSummary:
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    tests: TestSummary = field(default_factory=TestSummary)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def fully_passing(self) -> bool:
        return self.tests.fully_passing and not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "tests": self.tests.to_dict(),
            "failures": list(self.failures),
            "fully_passing": self.fully_passing,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CheckpointSummary":
        if not isinstance(data, dict):
            return cls()
        failures = data.get("failures")
        return cls(
            files_created=_str_list(data.get("files_created")),
            files_modified=_str_list(data.get("files_modified")),
            files_deleted=_str_list(data.get("files_deleted")),
            tests=TestSummary.from_dict(data.get("tests")),
            failures=list(failures) if isinstance(failures, list) else [],
        )


@dataclass
class Checkpoint:
    """A batch of completed tasks and the side effects reported while it was open."""

    index: int
    task_ids: list[str] = field(default_factory=list)
    attempted_task_ids: list[str] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)
    summary: Optional[CheckpointSummary] = None
    decision: Optional[CheckpointDecision] = None
    forced: bool = False
    snapshot_dir: Optional[str] = None
    opened_at: str = field(default_factory=_now_iso)
    closed_at: Optional[str] = None
    decided_at: Optional[str] = None
    applied_at: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    @property
    def applied(self) -> bool:
        return self.applied_at is not None

    @property
    def awaiting_decision(self) -> bool:
        return self.closed and not self.applied

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "task_ids": list(self.task_ids),
            "attempted_task_ids": list(self.attempted_task_ids),
            "results": list(self.results),
            "summary": self.summary.to_dict() if self.summary else None,
            "decision": self.decision.value if self.decision else None,
            "forced": self.forced,
            "snapshot_dir": self.snapshot_dir,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "decided_at": self.decided_at,
            "applied_at": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        decision = data.get("decision")
        results = data.get("results")
        return cls(
            index=int(data.get("index") or 0),
            task_ids=_str_list(data.get("task_ids")),
            attempted_task_ids=_str_list(data.get("attempted_task_ids")),
            results=list(results) if isinstance(results, list) else [],
            summary=CheckpointSummary.from_dict(data["summary"]) if data.get("summary") else None,
            decision=_coerce_enum(CheckpointDecision, decision, None) if decision else None,
            forced=bool(data.get("forced", False)),
            snapshot_dir=data.get("snapshot_dir"),
            opened_at=str(data.get("opened_at") or _now_iso()),
            closed_at=data.get("closed_at"),
            decided_at=data.get("decided_at"),
            applied_at=data.get("applied_at"),
        )
