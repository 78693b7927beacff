"""Validate plans: structural checks, rubric scoring, and the revision loop.

Structural problems (dangling references, cycles) fail fast and are never
retried. A plan that is structurally sound is then scored on five rubric
categories, each 0..2. The sum must reach the threshold for the plan's
complexity tier; otherwise the plan is sent back for a bounded number of
revisions before it is escalated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol

from loguru import logger

from .config import get_section
from .constants import RUBRIC_CATEGORIES, TIER_MAX_ITERATIONS, TIER_THRESHOLDS
from .errors import CircularDependencyError, EscalationRequired, UnknownDependencyError, ValidationBelowThreshold
from .graph import revise_plan, tasks_from_declarations
from .models import ComplexityTier, ExecutorKind, Plan, Task, TaskKind, ValidationResult


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------

def find_dangling(tasks: Mapping[str, Task]) -> list[tuple[str, str]]:
    """Return ``(task_id, missing_id)`` for every dependency that names no task."""
    dangling: list[tuple[str, str]] = []
    for task in tasks.values():
        for dep in task.dependencies:
            if dep not in tasks:
                dangling.append((task.id, dep))
    return dangling


def detect_cycle(tasks: Mapping[str, Task]) -> Optional[list[str]]:
    """Detect a dependency cycle with an iterative depth-first search.

    The search keeps an explicit recursion stack. A back-edge to a node that
    is currently on the stack closes a cycle; the stack contents from that
    node onward are returned. Nodes and edges are visited in sorted id order
    so the reported cycle is deterministic. Dependencies that name unknown
    tasks are ignored here (see :func:`find_dangling`).

    Returns:
        The cycle as a list of task ids, or None if the graph is acyclic.
    """
    # 0 = unvisited, 1 = on stack, 2 = done
    state: dict[str, int] = {task_id: 0 for task_id in tasks}

    for root in sorted(tasks):
        if state[root] != 0:
            continue
        path: list[str] = [root]
        state[root] = 1
        frames: list[Iterator[str]] = [iter(sorted(d for d in tasks[root].dependencies if d in tasks))]
        while frames:
            try:
                nxt = next(frames[-1])
            except StopIteration:
                frames.pop()
                state[path.pop()] = 2
                continue
            if state[nxt] == 1:
                return path[path.index(nxt):]
            if state[nxt] == 2:
                continue
            state[nxt] = 1
            path.append(nxt)
            frames.append(iter(sorted(d for d in tasks[nxt].dependencies if d in tasks)))
    return None


def check_structure(tasks: Mapping[str, Task]) -> None:
    """Raise on the first structural problem.

    Raises:
        UnknownDependencyError: A dependency names a task that does not exist.
        CircularDependencyError: The dependency graph has a cycle.
    """
    dangling = find_dangling(tasks)
    if dangling:
        task_id, missing = dangling[0]
        raise UnknownDependencyError(task_id, missing, dangling)
    cycle = detect_cycle(tasks)
    if cycle:
        raise CircularDependencyError(cycle)


# ---------------------------------------------------------------------------
# Rubric
# ---------------------------------------------------------------------------

CODE_CHANGE_KINDS = frozenset({TaskKind.CREATE, TaskKind.MODIFY, TaskKind.DELETE, TaskKind.REFACTOR})

_CODE_EXECUTORS = frozenset(ExecutorKind) - {ExecutorKind.DOCS, ExecutorKind.TESTING}

DEFAULT_AFFINITY: dict[TaskKind, frozenset[ExecutorKind]] = {
    TaskKind.CREATE: _CODE_EXECUTORS,
    TaskKind.MODIFY: _CODE_EXECUTORS,
    TaskKind.DELETE: _CODE_EXECUTORS,
    TaskKind.REFACTOR: _CODE_EXECUTORS,
    TaskKind.TEST: frozenset(
        {ExecutorKind.TESTING, ExecutorKind.BACKEND, ExecutorKind.FRONTEND, ExecutorKind.DATA, ExecutorKind.ML, ExecutorKind.GENERIC}
    ),
    TaskKind.CONFIG: frozenset(
        {ExecutorKind.INFRA, ExecutorKind.BACKEND, ExecutorKind.FRONTEND, ExecutorKind.DATABASE, ExecutorKind.INTEGRATION, ExecutorKind.GENERIC}
    ),
    TaskKind.DOC: frozenset({ExecutorKind.DOCS, ExecutorKind.GENERIC}),
}


@dataclass(frozen=True)
class RubricConfig:
    """Thresholds behind the rule-based category heuristics."""

    minor_gap_ratio: float = 0.8
    max_task_duration: float = 480.0
    max_plan_duration: float = 2400.0
    affinity: dict[TaskKind, frozenset[ExecutorKind]] = field(default_factory=lambda: dict(DEFAULT_AFFINITY), hash=False)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RubricConfig":
        raw = get_section(config, "validation", "rubric")
        affinity = dict(DEFAULT_AFFINITY)
        for kind_name, executors in (raw.get("affinity") or {}).items():
            try:
                kind = TaskKind(str(kind_name))
                affinity[kind] = frozenset(ExecutorKind(str(e)) for e in executors or [])
            except ValueError:
                logger.warning("Ignoring invalid rubric affinity entry: {}={}", kind_name, executors)
        defaults = cls()
        return cls(
            minor_gap_ratio=float(raw.get("minor_gap_ratio", defaults.minor_gap_ratio)),
            max_task_duration=float(raw.get("max_task_duration", defaults.max_task_duration)),
            max_plan_duration=float(raw.get("max_plan_duration", defaults.max_plan_duration)),
            affinity=affinity,
        )


@dataclass(frozen=True)
class RubricContext:
    config: RubricConfig
    registered_executors: Optional[frozenset[ExecutorKind]] = None


CategoryScorer = Callable[[Plan, RubricContext], tuple[int, list[str]]]


def ratio_score(ratio: float, minor_gap_ratio: float) -> int:
    """Map a coverage ratio to 2 (full), 1 (minor gaps) or 0 (major gaps)."""
    if ratio >= 1.0 - 1e-9:
        return 2
    if ratio >= minor_gap_ratio:
        return 1
    return 0


def score_completeness(plan: Plan, ctx: RubricContext) -> tuple[int, list[str]]:
    tasks = list(plan.tasks.values())
    if not tasks:
        return 0, ["Plan has no tasks"]
    issues: list[str] = []
    if plan.requirements:
        covered = {req for task in tasks for req in task.requirements}
        missing = [req.id for req in plan.requirements if req.id not in covered]
        known = {req.id for req in plan.requirements}
        for task in tasks:
            for req in task.requirements:
                if req not in known:
                    issues.append(f"Task {task.id} references unknown requirement {req}")
        issues.extend(f"Requirement {req_id} is not covered by any task" for req_id in missing)
        ratio = 1.0 - len(missing) / len(plan.requirements)
    else:
        undescribed = [task.id for task in tasks if not task.description.strip()]
        issues.extend(f"Task {task_id} has no description" for task_id in undescribed)
        ratio = 1.0 - len(undescribed) / len(tasks)
    return ratio_score(ratio, ctx.config.minor_gap_ratio), issues


def _reachable(tasks: Mapping[str, Task], start: str) -> set[str]:
    seen: set[str] = set()
    stack = [start]
    while stack:
        node = stack.pop()
        for dep in tasks[node].dependencies:
            if dep in tasks and dep not in seen:
                seen.add(dep)
                stack.append(dep)
    return seen


def score_dependency_accuracy(plan: Plan, ctx: RubricContext) -> tuple[int, list[str]]:
    tasks = plan.tasks
    if not tasks:
        return 2, []
    issues: list[str] = []
    suspicious: set[str] = set()
    has_work = any(task.kind not in {TaskKind.TEST, TaskKind.DOC} for task in tasks.values())
    for task in tasks.values():
        if len(tasks) > 1 and has_work and task.kind in {TaskKind.TEST, TaskKind.DOC} and not task.dependencies:
            suspicious.add(task.id)
            issues.append(f"Task {task.id} ({task.kind.value}) does not depend on the work it covers")
        for dep in task.dependencies:
            others = [other for other in task.dependencies if other != dep]
            if any(dep in _reachable(tasks, other) for other in others):
                suspicious.add(task.id)
                issues.append(f"Task {task.id} dependency on {dep} is already implied transitively")
    ratio = 1.0 - len(suspicious) / len(tasks)
    return ratio_score(ratio, ctx.config.minor_gap_ratio), issues


def score_executor_assignment(plan: Plan, ctx: RubricContext) -> tuple[int, list[str]]:
    tasks = list(plan.tasks.values())
    if not tasks:
        return 2, []
    issues: list[str] = []
    bad = 0
    for task in tasks:
        if ctx.registered_executors is not None and task.executor_ref not in ctx.registered_executors:
            bad += 1
            issues.append(f"Task {task.id} routes to unregistered executor {task.executor_ref.value}")
            continue
        allowed = ctx.config.affinity.get(task.kind, frozenset(ExecutorKind))
        if task.executor_ref not in allowed:
            bad += 1
            issues.append(f"Task {task.id} ({task.kind.value}) is not a fit for executor {task.executor_ref.value}")
    return ratio_score(1.0 - bad / len(tasks), ctx.config.minor_gap_ratio), issues


def score_feasibility(plan: Plan, ctx: RubricContext) -> tuple[int, list[str]]:
    issues: list[str] = []
    violations = 0
    total = sum(plan.tasks[task_id].duration_estimate for task_id in plan.critical_path if task_id in plan.tasks)
    if total > ctx.config.max_plan_duration:
        violations += 1
        issues.append(f"Critical path takes {total:g} min (budget {ctx.config.max_plan_duration:g})")
    oversized = [task.id for task in plan.tasks.values() if task.duration_estimate > ctx.config.max_task_duration]
    if oversized:
        violations += 1
        issues.append(
            f"Tasks over {ctx.config.max_task_duration:g} min should be split: {', '.join(oversized)}"
        )
    return max(0, 2 - violations), issues


def score_testability(plan: Plan, ctx: RubricContext) -> tuple[int, list[str]]:
    tasks = list(plan.tasks.values())
    if not tasks:
        return 0, ["Plan has no tasks to verify"]
    issues: list[str] = []
    without = [task.id for task in tasks if not task.acceptance_criteria]
    issues.extend(f"Task {task_id} has no acceptance criteria" for task_id in without)
    score = ratio_score(1.0 - len(without) / len(tasks), ctx.config.minor_gap_ratio)
    changes_code = any(task.kind in CODE_CHANGE_KINDS for task in tasks)
    if changes_code and not any(task.kind == TaskKind.TEST for task in tasks):
        issues.append("Plan changes code but has no test task")
        score = max(0, score - 1)
    return score, issues


DEFAULT_SCORERS: dict[str, CategoryScorer] = {
    "completeness": score_completeness,
    "dependency_accuracy": score_dependency_accuracy,
    "executor_assignment": score_executor_assignment,
    "feasibility": score_feasibility,
    "testability": score_testability,
}


def threshold_for_tier(tier: ComplexityTier) -> Optional[int]:
    return TIER_THRESHOLDS[tier.value]


def max_iterations_for_tier(tier: ComplexityTier) -> int:
    return TIER_MAX_ITERATIONS[tier.value]


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class PlanReviser(Protocol):
    def revise(self, plan: Plan, result: ValidationResult) -> list[dict[str, Any]]:
        """Return revised task declarations for *plan*."""
        ...


class PlanValidator:
    """Gate plans on structure and rubric score before execution."""

    def __init__(
        self,
        config: Optional[RubricConfig] = None,
        *,
        registered_executors: Optional[frozenset[ExecutorKind]] = None,
        scorers: Optional[dict[str, CategoryScorer]] = None,
        tie_break: str = "lexicographic",
        long_running_minutes: float = 120.0,
    ) -> None:
        self.context = RubricContext(config or RubricConfig(), registered_executors)
        self.scorers = dict(DEFAULT_SCORERS)
        if scorers:
            unknown = set(scorers) - set(RUBRIC_CATEGORIES)
            if unknown:
                raise ValueError(f"Unknown rubric categories: {sorted(unknown)}")
            self.scorers.update(scorers)
        self.tie_break = tie_break
        self.long_running_minutes = long_running_minutes

    def score(self, plan: Plan, *, iteration: int = 0) -> ValidationResult:
        scores: dict[str, int] = {}
        issues: list[str] = []
        for category in RUBRIC_CATEGORIES:
            value, category_issues = self.scorers[category](plan, self.context)
            scores[category] = max(0, min(2, int(value)))
            issues.extend(f"[{category}] {issue}" for issue in category_issues)
        return ValidationResult(
            scores=scores,
            threshold=threshold_for_tier(plan.complexity_tier),
            tier=plan.complexity_tier,
            issues=tuple(issues),
            iteration=iteration,
        )

    def validate(self, plan: Plan, *, iteration: int = 0) -> ValidationResult:
        """Run structural checks, then score unless the tier skips validation."""
        check_structure(plan.tasks)
        if threshold_for_tier(plan.complexity_tier) is None:
            return ValidationResult(tier=plan.complexity_tier, skipped=True, iteration=iteration)
        return self.score(plan, iteration=iteration)

    def validate_or_raise(self, plan: Plan, *, iteration: int = 0) -> ValidationResult:
        result = self.validate(plan, iteration=iteration)
        if not result.passed:
            raise ValidationBelowThreshold(plan.id, result)
        return result

    def validate_with_revisions(self, plan: Plan, reviser: Optional[PlanReviser] = None) -> Plan:
        """Validate *plan*, asking *reviser* for revisions while it scores too low.

        Returns:
            The validated (frozen) plan, possibly a revision ``<id>-R<n>``.

        Raises:
            EscalationRequired: No reviser is available, or the tier's
                revision budget ran out without reaching the threshold.
        """
        iteration = 0
        while True:
            try:
                result = self.validate_or_raise(plan, iteration=iteration)
            except ValidationBelowThreshold as exc:
                budget = max_iterations_for_tier(plan.complexity_tier)
                logger.warning(
                    "Plan {} scored {} below threshold {} (iteration {}/{})",
                    plan.id,
                    exc.result.overall_score,
                    exc.result.threshold,
                    iteration,
                    budget,
                )
                if reviser is None or iteration >= budget:
                    reason = (
                        f"Plan {plan.id} is below the validation threshold after {iteration} revision(s)"
                        if reviser is not None
                        else f"Plan {plan.id} is below the validation threshold and no reviser is configured"
                    )
                    raise EscalationRequired(reason, result=exc.result) from exc
                iteration += 1
                revised = tasks_from_declarations(reviser.revise(plan, exc.result))
                check_structure(revised)
                plan = revise_plan(
                    plan,
                    list(revised.values()),
                    tie_break=self.tie_break,
                    long_running_minutes=self.long_running_minutes,
                )
                continue
            logger.info(
                "Plan {} validated: tier={} score={} skipped={}",
                plan.id,
                plan.complexity_tier.value,
                result.overall_score,
                result.skipped,
            )
            return plan.with_validation(result)
