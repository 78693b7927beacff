"""Error taxonomy for plan building, validation, execution and rollback.

Every error carries enough context to act on without re-deriving state
(task ids, cycle contents, score breakdown, retry counts). ``to_dict()``
renders that context for logs, the CLI and the HTTP API.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .models import ValidationResult


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""

    error_type = "orchestrator_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error_type": self.error_type, "message": self.message}
        payload.update(self.details())
        return payload


class PlanStructureError(OrchestratorError):
    """Structural plan errors. These fail fast and are never retried."""

    error_type = "plan_structure"


class MalformedTaskError(PlanStructureError):
    error_type = "malformed_task"

    def __init__(self, task_id: str, reason: str) -> None:
        label = task_id if task_id else "<empty>"
        super().__init__(f"Malformed task {label}: {reason}")
        self.task_id = task_id
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "reason": self.reason}


class UnknownDependencyError(PlanStructureError):
    error_type = "unknown_dependency"

    def __init__(
        self,
        task_id: str,
        missing_id: str,
        dangling: Optional[list[tuple[str, str]]] = None,
    ) -> None:
        super().__init__(f"Task {task_id} depends on unknown task {missing_id}")
        self.task_id = task_id
        self.missing_id = missing_id
        self.dangling = list(dangling or [(task_id, missing_id)])

    def details(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "missing_id": self.missing_id,
            "dangling": [{"task_id": t, "missing_id": m} for t, m in self.dangling],
        }


class CircularDependencyError(PlanStructureError):
    error_type = "circular_dependency"

    def __init__(self, cycle: list[str]) -> None:
        rendered = " -> ".join([*cycle, cycle[0]]) if cycle else ""
        super().__init__(f"Circular dependency detected: {rendered}")
        self.cycle = list(cycle)

    def details(self) -> dict[str, Any]:
        return {"cycle": list(self.cycle)}


class GraphBuildError(PlanStructureError):
    """The builder could not layer the graph (a dependency is not in an earlier layer)."""

    error_type = "graph_build"

    def __init__(self, message: str, task_ids: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.task_ids = list(task_ids or [])

    def details(self) -> dict[str, Any]:
        return {"task_ids": list(self.task_ids)}


class ValidationBelowThreshold(OrchestratorError):
    """Rubric score is under the tier threshold. Triggers the revision loop."""

    error_type = "validation_below_threshold"

    def __init__(self, plan_id: str, result: "ValidationResult") -> None:
        super().__init__(
            f"Plan {plan_id} scored {result.overall_score} "
            f"(threshold {result.threshold})"
        )
        self.plan_id = plan_id
        self.result = result

    def details(self) -> dict[str, Any]:
        return {"plan_id": self.plan_id, "validation": self.result.to_dict()}


class TaskExecutionError(OrchestratorError):
    """An executor reported (or raised) a failure for one attempt of a task."""

    error_type = "task_execution"

    def __init__(self, task_id: str, attempt: int, detail: str) -> None:
        super().__init__(f"Task {task_id} failed on attempt {attempt}: {detail}")
        self.task_id = task_id
        self.attempt = attempt
        self.detail = detail

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "attempt": self.attempt, "detail": self.detail}


class EscalationRequired(OrchestratorError):
    """Automatic policy is exhausted; an external decision-maker must act."""

    error_type = "escalation_required"

    def __init__(
        self,
        reason: str,
        *,
        task_id: Optional[str] = None,
        attempts: Optional[int] = None,
        retry_count: Optional[int] = None,
        last_error: Optional[str] = None,
        result: Optional["ValidationResult"] = None,
        checkpoint_index: Optional[int] = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.task_id = task_id
        self.attempts = attempts
        self.retry_count = retry_count
        self.last_error = last_error
        self.result = result
        self.checkpoint_index = checkpoint_index

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"reason": self.reason}
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        if self.attempts is not None:
            payload["attempts"] = self.attempts
        if self.retry_count is not None:
            payload["retry_count"] = self.retry_count
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        if self.result is not None:
            payload["validation"] = self.result.to_dict()
        if self.checkpoint_index is not None:
            payload["checkpoint_index"] = self.checkpoint_index
        return payload


class RollbackError(OrchestratorError):
    """A side effect could not be reverted. Fatal to the run."""

    error_type = "rollback_failed"

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Could not roll back {path}: {detail}")
        self.path = path
        self.detail = detail

    def details(self) -> dict[str, Any]:
        return {"path": self.path, "detail": self.detail}


class InvalidTransitionError(OrchestratorError):
    error_type = "invalid_transition"

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "from": self.current, "to": self.target}


class StateStoreError(OrchestratorError):
    error_type = "state_store"


class DecisionRequired(EscalationRequired):
    """A checkpoint is waiting for a continue/rollback/pause decision."""

    error_type = "decision_required"

    def __init__(self, plan_id: str, checkpoint_index: int) -> None:
        super().__init__(
            f"Plan {plan_id} checkpoint {checkpoint_index} is waiting for a decision",
            checkpoint_index=checkpoint_index,
        )
        self.plan_id = plan_id

    def details(self) -> dict[str, Any]:
        payload = super().details()
        payload["plan_id"] = self.plan_id
        return payload
