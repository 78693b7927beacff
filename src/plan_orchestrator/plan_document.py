"""Plan document interchange format (JSON or YAML), validated with pydantic."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import MalformedTaskError, OrchestratorError
from .models import ExecutorKind, TaskKind


class PlanDocumentError(OrchestratorError):
    error_type = "plan_document"

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Invalid plan document {path}: {detail}")
        self.path = path
        self.detail = detail

    def details(self) -> dict[str, Any]:
        return {"path": self.path, "detail": self.detail}


class RequirementDecl(BaseModel):
    id: str
    description: str = ""


class TaskDeclaration(BaseModel):
    id: str
    kind: TaskKind = TaskKind.MODIFY
    description: str = ""
    executor: ExecutorKind = ExecutorKind.GENERIC
    dependencies: list[str] = Field(default_factory=list)
    duration_estimate: float = Field(default=0.0, ge=0)
    acceptance_criteria: list[str] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_declaration(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["metadata"] = dict(self.metadata)
        return data


class PlanDocument(BaseModel):
    id: str
    description: str = ""
    requirements: list[RequirementDecl] = Field(default_factory=list)
    tasks: list[TaskDeclaration] = Field(default_factory=list)

    def declarations(self) -> list[dict[str, Any]]:
        return [task.to_declaration() for task in self.tasks]


def _task_id_for_error(raw: Any, loc: tuple[Any, ...]) -> Optional[str]:
    if len(loc) < 2 or loc[0] != "tasks" or not isinstance(loc[1], int):
        return None
    tasks = raw.get("tasks") if isinstance(raw, dict) else None
    if isinstance(tasks, list) and loc[1] < len(tasks) and isinstance(tasks[loc[1]], dict):
        return str(tasks[loc[1]].get("id") or "")
    return ""


def parse_plan_document(raw: Any, *, source: str = "<memory>") -> PlanDocument:
    """Validate an already-parsed plan document.

    Raises:
        MalformedTaskError: If a task entry has an invalid field.
        PlanDocumentError: If the document itself is malformed.
    """
    if not isinstance(raw, dict):
        raise PlanDocumentError(source, f"expected an object, got {type(raw).__name__}")
    try:
        return PlanDocument.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = tuple(first.get("loc") or ())
        task_id = _task_id_for_error(raw, loc)
        field_name = ".".join(str(part) for part in loc[2:]) or "task"
        if task_id is not None:
            raise MalformedTaskError(task_id, f"{field_name}: {first.get('msg')}") from exc
        raise PlanDocumentError(source, f"{'.'.join(str(p) for p in loc)}: {first.get('msg')}") from exc


def load_plan_document(path: Path) -> PlanDocument:
    """Read a plan document from ``.json``, ``.yaml`` or ``.yml``."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanDocumentError(str(path), f"{exc.__class__.__name__}: {exc}") from exc
    try:
        if path.suffix in {".yaml", ".yml"}:
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PlanDocumentError(str(path), f"{exc.__class__.__name__}: {exc}") from exc
    return parse_plan_document(raw, source=str(path))
