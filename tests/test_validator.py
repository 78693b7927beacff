"""Tests for structural checks, rubric scoring and the revision loop."""

from __future__ import annotations

import random
from typing import Any

import pytest

from plan_orchestrator.constants import RUBRIC_CATEGORIES
from plan_orchestrator.errors import (
    CircularDependencyError,
    EscalationRequired,
    UnknownDependencyError,
    ValidationBelowThreshold,
)
from plan_orchestrator.graph import build_plan, tasks_from_declarations
from plan_orchestrator.models import ComplexityTier, ExecutorKind, Plan, ValidationResult
from plan_orchestrator.validator import (
    PlanValidator,
    RubricConfig,
    check_structure,
    detect_cycle,
    find_dangling,
    score_feasibility,
    threshold_for_tier,
)


def _weak_chain() -> list[dict[str, Any]]:
    """A moderate-tier chain with no descriptions, criteria or tests."""
    return [
        {"id": "a"},
        {"id": "b", "dependencies": ["a"]},
        {"id": "c", "dependencies": ["b"]},
        {"id": "d", "dependencies": ["c"]},
    ]


def _strong_chain() -> list[dict[str, Any]]:
    decls = []
    for decl in _weak_chain():
        decls.append({**decl, "description": f"Implement {decl['id']}", "acceptance_criteria": ["works"]})
    decls.append(
        {
            "id": "verify",
            "kind": "test",
            "executor": "testing",
            "description": "Run the suite",
            "dependencies": ["d"],
            "acceptance_criteria": ["suite passes"],
        }
    )
    return decls


class FixingReviser:
    def __init__(self) -> None:
        self.calls = 0

    def revise(self, plan: Plan, result: ValidationResult) -> list[dict[str, Any]]:
        self.calls += 1
        return _strong_chain()


class StubbornReviser:
    def __init__(self) -> None:
        self.calls = 0

    def revise(self, plan: Plan, result: ValidationResult) -> list[dict[str, Any]]:
        self.calls += 1
        return [task.to_dict() for task in plan.tasks.values()]


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def test_scenario_b_reports_cycle() -> None:
    tasks = tasks_from_declarations(
        [{"id": "A"}, {"id": "B", "dependencies": ["C"]}, {"id": "C", "dependencies": ["B"]}]
    )

    with pytest.raises(CircularDependencyError) as excinfo:
        check_structure(tasks)

    assert excinfo.value.cycle == ["B", "C"]
    assert excinfo.value.to_dict()["cycle"] == ["B", "C"]


def test_self_dependency_is_a_cycle_of_one() -> None:
    tasks = tasks_from_declarations([{"id": "A", "dependencies": ["A"]}])

    assert detect_cycle(tasks) == ["A"]


def test_dangling_reference_names_task_and_missing_id() -> None:
    tasks = tasks_from_declarations([{"id": "A"}, {"id": "B", "dependencies": ["A", "ghost"]}])

    assert find_dangling(tasks) == [("B", "ghost")]
    with pytest.raises(UnknownDependencyError) as excinfo:
        check_structure(tasks)
    assert (excinfo.value.task_id, excinfo.value.missing_id) == ("B", "ghost")


def _dag_edges(rng: random.Random, size: int) -> dict[str, list[str]]:
    ids = [f"n{i:02d}" for i in range(size)]
    return {
        node: rng.sample(ids[:idx], k=rng.randint(0, min(3, idx))) if idx else []
        for idx, node in enumerate(ids)
    }


def _tasks(edges: dict[str, list[str]]):
    return tasks_from_declarations([{"id": node, "dependencies": deps} for node, deps in edges.items()])


@pytest.mark.parametrize("seed", range(25))
def test_no_false_positives_on_dags(seed: int) -> None:
    rng = random.Random(seed)
    edges = _dag_edges(rng, rng.randint(1, 25))

    assert detect_cycle(_tasks(edges)) is None


@pytest.mark.parametrize("seed", range(25))
def test_detects_injected_cycles(seed: int) -> None:
    rng = random.Random(1000 + seed)
    edges = _dag_edges(rng, rng.randint(2, 25))
    # Close a cycle: an ancestor now depends on one of its descendants.
    candidates = [(node, dep) for node, deps in edges.items() for dep in deps]
    if candidates:
        node, dep = rng.choice(candidates)
        edges[dep] = [*edges[dep], node]
    else:
        first = next(iter(edges))
        edges[first] = [first]
    tasks = _tasks(edges)

    cycle = detect_cycle(tasks)

    assert cycle
    for idx, task_id in enumerate(cycle):
        nxt = cycle[(idx + 1) % len(cycle)]
        assert nxt in tasks[task_id].dependencies
    assert len(set(cycle)) == len(cycle)


# ---------------------------------------------------------------------------
# Rubric
# ---------------------------------------------------------------------------


def test_overall_score_is_sum_of_categories() -> None:
    plan = build_plan(_weak_chain(), plan_id="weak")
    result = PlanValidator().score(plan)

    assert set(result.scores) == set(RUBRIC_CATEGORIES)
    assert all(0 <= value <= 2 for value in result.scores.values())
    assert result.overall_score == sum(result.scores.values())
    assert result.passed == (result.overall_score >= result.threshold)


def test_weak_moderate_plan_fails_threshold() -> None:
    plan = build_plan(_weak_chain(), plan_id="weak")
    assert plan.complexity_tier == ComplexityTier.MODERATE

    result = PlanValidator().validate(plan)

    assert result.threshold == 7
    assert result.scores["completeness"] == 0
    assert result.scores["testability"] == 0
    assert not result.passed
    assert any("no test task" in issue for issue in result.issues)


def test_threshold_per_tier() -> None:
    assert threshold_for_tier(ComplexityTier.SIMPLE) is None
    assert threshold_for_tier(ComplexityTier.MODERATE) == 7
    assert threshold_for_tier(ComplexityTier.COMPLEX) == 8


def test_simple_plans_skip_scoring() -> None:
    plan = build_plan([{"id": "only"}], plan_id="tiny")
    assert plan.complexity_tier == ComplexityTier.SIMPLE

    result = PlanValidator().validate(plan)

    assert result.skipped
    assert result.passed


def test_validation_result_rejects_out_of_range_scores() -> None:
    with pytest.raises(ValueError):
        ValidationResult(scores={"completeness": 3})


def test_unregistered_executor_lowers_assignment_score() -> None:
    plan = build_plan(_strong_chain(), plan_id="strong")
    validator = PlanValidator(registered_executors=frozenset({ExecutorKind.GENERIC}))

    result = validator.score(plan)

    assert result.scores["executor_assignment"] == 1
    assert any("unregistered executor testing" in issue for issue in result.issues)


def test_feasibility_budgets_come_from_config() -> None:
    plan = build_plan([{"id": "big", "duration_estimate": 600}], plan_id="big")
    strict = RubricConfig.from_config({"validation": {"rubric": {"max_task_duration": 100, "max_plan_duration": 500}}})

    score, issues = score_feasibility(plan, PlanValidator(strict).context)

    assert score == 0
    assert len(issues) == 2


def test_replacing_a_category_scorer() -> None:
    plan = build_plan(_weak_chain(), plan_id="weak")
    validator = PlanValidator(scorers={"completeness": lambda plan, ctx: (2, [])})

    assert validator.score(plan).scores["completeness"] == 2
    with pytest.raises(ValueError):
        PlanValidator(scorers={"style": lambda plan, ctx: (2, [])})


# ---------------------------------------------------------------------------
# Revision loop
# ---------------------------------------------------------------------------


def test_revision_loop_returns_passing_revision() -> None:
    reviser = FixingReviser()
    plan = build_plan(_weak_chain(), plan_id="feature")

    validated = PlanValidator().validate_with_revisions(plan, reviser)

    assert reviser.calls == 1
    assert validated.id == "feature-R1"
    assert validated.validated
    assert validated.validation.iteration == 1
    with pytest.raises(ValueError):
        validated.with_validation(validated.validation)


def test_revision_budget_exhaustion_escalates() -> None:
    reviser = StubbornReviser()
    plan = build_plan(_weak_chain(), plan_id="feature")

    with pytest.raises(EscalationRequired) as excinfo:
        PlanValidator().validate_with_revisions(plan, reviser)

    assert reviser.calls == 1
    assert excinfo.value.result is not None
    assert excinfo.value.result.iteration == 1
    assert "validation" in excinfo.value.to_dict()


def test_without_reviser_escalates_from_below_threshold() -> None:
    plan = build_plan(_weak_chain(), plan_id="feature")

    with pytest.raises(EscalationRequired) as excinfo:
        PlanValidator().validate_with_revisions(plan)

    assert isinstance(excinfo.value.__cause__, ValidationBelowThreshold)


def test_revision_with_cycle_fails_fast() -> None:
    class CyclicReviser:
        def revise(self, plan: Plan, result: ValidationResult) -> list[dict[str, Any]]:
            return [{"id": "x", "dependencies": ["y"]}, {"id": "y", "dependencies": ["x"]}]

    plan = build_plan(_weak_chain(), plan_id="feature")

    with pytest.raises(CircularDependencyError):
        PlanValidator().validate_with_revisions(plan, CyclicReviser())
