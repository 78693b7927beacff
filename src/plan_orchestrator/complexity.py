"""Complexity classification over plan shape.

The classifier is a pure function of a few shape counts, weighted by an
explicit table. The tier drives validation strictness and retry budgets.

    score = task_count * 1
          + distinct_executor_kinds * 2
          + parallel_group_count * 1.5
          + external_integration_count * 3
          + has_ml_or_long_running_step * 5
          + has_migration_step * 2

    simple    score <= 5
    moderate  5 < score <= 15
    complex   score > 15
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .models import ComplexityTier, ExecutorKind, Task

COMPLEXITY_WEIGHTS: dict[str, float] = {
    "task_count": 1.0,
    "distinct_executor_kinds": 2.0,
    "parallel_group_count": 1.5,
    "external_integration_count": 3.0,
    "has_ml_or_long_running_step": 5.0,
    "has_migration_step": 2.0,
}

SIMPLE_MAX_SCORE = 5.0
MODERATE_MAX_SCORE = 15.0


@dataclass(frozen=True)
class ComplexityInputs:
    task_count: int = 0
    distinct_executor_kinds: int = 0
    parallel_group_count: int = 0
    external_integration_count: int = 0
    has_ml_or_long_running_step: bool = False
    has_migration_step: bool = False

    def as_weighted_terms(self) -> dict[str, float]:
        return {
            "task_count": float(self.task_count),
            "distinct_executor_kinds": float(self.distinct_executor_kinds),
            "parallel_group_count": float(self.parallel_group_count),
            "external_integration_count": float(self.external_integration_count),
            "has_ml_or_long_running_step": 1.0 if self.has_ml_or_long_running_step else 0.0,
            "has_migration_step": 1.0 if self.has_migration_step else 0.0,
        }


def complexity_score(inputs: ComplexityInputs) -> float:
    terms = inputs.as_weighted_terms()
    return sum(COMPLEXITY_WEIGHTS[name] * value for name, value in terms.items())


def classify_score(score: float) -> ComplexityTier:
    if score <= SIMPLE_MAX_SCORE:
        return ComplexityTier.SIMPLE
    if score <= MODERATE_MAX_SCORE:
        return ComplexityTier.MODERATE
    return ComplexityTier.COMPLEX


def classify(inputs: ComplexityInputs) -> tuple[float, ComplexityTier]:
    score = complexity_score(inputs)
    return score, classify_score(score)


def _flag(task: Task, key: str) -> bool:
    return bool(task.metadata.get(key))


def inputs_from_plan(
    tasks: Mapping[str, Task] | Iterable[Task],
    parallel_groups: Sequence[Sequence[str]],
    *,
    long_running_minutes: float,
) -> ComplexityInputs:
    """Derive classifier inputs from tasks and their layering.

    A task counts as an external integration when it is routed to the
    integration executor or flagged ``external`` in its metadata. ML or
    long-running steps are ML-routed tasks, tasks flagged ``long_running``,
    or tasks whose estimate reaches *long_running_minutes*.
    """
    items = list(tasks.values()) if isinstance(tasks, Mapping) else list(tasks)
    external = sum(
        1 for task in items if task.executor_ref == ExecutorKind.INTEGRATION or _flag(task, "external")
    )
    ml_or_long = any(
        task.executor_ref == ExecutorKind.ML
        or _flag(task, "long_running")
        or task.duration_estimate >= long_running_minutes
        for task in items
    )
    return ComplexityInputs(
        task_count=len(items),
        distinct_executor_kinds=len({task.executor_ref for task in items}),
        parallel_group_count=len(parallel_groups),
        external_integration_count=external,
        has_ml_or_long_running_step=ml_or_long,
        has_migration_step=any(_flag(task, "migration") for task in items),
    )
