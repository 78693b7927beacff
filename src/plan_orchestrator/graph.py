"""Build layered task graphs from declarations.

Tasks are grouped into parallel layers with Kahn's algorithm (layer 0 has
no dependencies; layer k holds tasks whose dependencies all sit in earlier
layers) and the critical path is the maximum-duration source-to-sink path.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger

from .complexity import classify, inputs_from_plan
from .constants import DEFAULT_LONG_RUNNING_MINUTES, DEFAULT_TIE_BREAK, TIE_BREAK_CHOICES
from .errors import GraphBuildError, MalformedTaskError
from .models import Plan, Requirement, Task

Declaration = Union[Task, Mapping[str, Any]]


def tasks_from_declarations(declarations: Iterable[Declaration]) -> dict[str, Task]:
    """Turn declarations into an ordered id -> Task map.

    Raises:
        MalformedTaskError: If an id is empty or declared twice.
    """
    tasks: dict[str, Task] = {}
    for decl in declarations:
        task = decl if isinstance(decl, Task) else Task.from_dict(dict(decl))
        if not task.id:
            raise MalformedTaskError("", "task id must be a non-empty string")
        if task.id in tasks:
            raise MalformedTaskError(task.id, "duplicate task id")
        tasks[task.id] = task
    return tasks


def compute_parallel_groups(tasks: Mapping[str, Task]) -> list[list[str]]:
    """Return the layered topological order of *tasks* (ids sorted inside a layer).

    Raises:
        GraphBuildError: If some tasks can never be scheduled (a cycle or a
            dependency on an unknown task). The validator reports the cause.
    """
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = defaultdict(list)
    for task in tasks.values():
        in_degree[task.id] = len(task.dependencies)
        for dep in task.dependencies:
            dependents[dep].append(task.id)

    groups: list[list[str]] = []
    layer = sorted(task_id for task_id, degree in in_degree.items() if degree == 0)
    while layer:
        groups.append(layer)
        nxt: list[str] = []
        for task_id in layer:
            for dependent in dependents.get(task_id, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    nxt.append(dependent)
        layer = sorted(nxt)

    scheduled = sum(len(group) for group in groups)
    if scheduled != len(tasks):
        placed = {task_id for group in groups for task_id in group}
        missing = [task_id for task_id in tasks if task_id not in placed]
        raise GraphBuildError(f"Failed to schedule all tasks. Missing: {missing}", missing)
    return groups


def assert_layering(tasks: Mapping[str, Task], groups: Sequence[Sequence[str]]) -> None:
    """Check every dependency sits in a strictly earlier layer."""
    layer_of = {task_id: idx for idx, group in enumerate(groups) for task_id in group}
    for task in tasks.values():
        if task.id not in layer_of:
            raise GraphBuildError(f"Task {task.id} is not in any parallel group", [task.id])
        for dep in task.dependencies:
            if dep not in layer_of or layer_of[dep] >= layer_of[task.id]:
                raise GraphBuildError(
                    f"Task {task.id} depends on {dep}, which is not in an earlier group",
                    [task.id, dep],
                )


def compute_critical_path(
    tasks: Mapping[str, Task],
    groups: Sequence[Sequence[str]],
    tie_break: str = DEFAULT_TIE_BREAK,
) -> list[str]:
    """Return the maximum total-duration path from any source to any sink.

    Equal-duration paths are resolved at their first point of divergence:
    ``lexicographic`` prefers the smaller task id, ``reverse_lexicographic``
    the larger one.
    """
    if tie_break not in TIE_BREAK_CHOICES:
        raise ValueError(f"Unknown tie-break convention: {tie_break}")
    prefer_smaller = tie_break == "lexicographic"

    def better(candidate: tuple[float, list[str]], current: Optional[tuple[float, list[str]]]) -> bool:
        if current is None:
            return True
        cw, cp = round(candidate[0], 9), candidate[1]
        bw, bp = round(current[0], 9), current[1]
        if cw != bw:
            return cw > bw
        return cp < bp if prefer_smaller else cp > bp

    best: dict[str, tuple[float, list[str]]] = {}
    for group in groups:
        for task_id in group:
            task = tasks[task_id]
            chosen: Optional[tuple[float, list[str]]] = None
            for dep in task.dependencies:
                weight, path = best[dep]
                candidate = (weight + task.duration_estimate, [*path, task_id])
                if better(candidate, chosen):
                    chosen = candidate
            best[task_id] = chosen or (task.duration_estimate, [task_id])

    has_dependents = {dep for task in tasks.values() for dep in task.dependencies}
    result: Optional[tuple[float, list[str]]] = None
    for task_id, entry in best.items():
        if task_id in has_dependents:
            continue
        if better(entry, result):
            result = entry
    return list(result[1]) if result else []


def _assemble(
    plan_id: str,
    tasks: dict[str, Task],
    *,
    requirements: Sequence[Requirement],
    tie_break: str,
    long_running_minutes: float,
    revision: int,
    base_id: str,
) -> Plan:
    groups = compute_parallel_groups(tasks)
    assert_layering(tasks, groups)
    critical = compute_critical_path(tasks, groups, tie_break)
    score, tier = classify(inputs_from_plan(tasks, groups, long_running_minutes=long_running_minutes))
    logger.debug(
        "Built plan {}: {} tasks, {} groups, critical path {}, complexity {} ({})",
        plan_id,
        len(tasks),
        len(groups),
        critical,
        score,
        tier.value,
    )
    return Plan(
        id=plan_id,
        base_id=base_id,
        revision=revision,
        tasks=tasks,
        parallel_groups=tuple(tuple(group) for group in groups),
        critical_path=tuple(critical),
        complexity_tier=tier,
        complexity_score=score,
        requirements=tuple(requirements),
    )


def build_plan(
    declarations: Iterable[Declaration],
    *,
    plan_id: str,
    requirements: Sequence[Requirement] = (),
    tie_break: str = DEFAULT_TIE_BREAK,
    long_running_minutes: float = DEFAULT_LONG_RUNNING_MINUTES,
) -> Plan:
    """Build a layered Plan from an ordered list of task declarations."""
    if not plan_id:
        raise ValueError("plan_id must be non-empty")
    tasks = tasks_from_declarations(declarations)
    return _assemble(
        plan_id,
        tasks,
        requirements=requirements,
        tie_break=tie_break,
        long_running_minutes=long_running_minutes,
        revision=0,
        base_id=plan_id,
    )


def revise_plan(
    plan: Plan,
    declarations: Iterable[Declaration],
    *,
    tie_break: str = DEFAULT_TIE_BREAK,
    long_running_minutes: float = DEFAULT_LONG_RUNNING_MINUTES,
) -> Plan:
    """Build the next revision of *plan* (``<base>-R1``, ``<base>-R2``, ...)."""
    base_id = plan.base_id or plan.id
    revision = plan.revision + 1
    tasks = tasks_from_declarations(declarations)
    logger.info("Revising plan {} -> {}-R{}", plan.id, base_id, revision)
    return _assemble(
        f"{base_id}-R{revision}",
        tasks,
        requirements=plan.requirements,
        tie_break=tie_break,
        long_running_minutes=long_running_minutes,
        revision=revision,
        base_id=base_id,
    )
