"""Provide the public `plan_orchestrator` package exports."""

from __future__ import annotations

__version__ = "0.1.0"

from .executors import ExecutorRegistry, build_default_registry
from .graph import build_plan
from .orchestrator import Orchestrator, RunReport
from .planning import plan_from_document, prepare_plan
from .validator import PlanValidator

__all__ = [
    "ExecutorRegistry",
    "Orchestrator",
    "PlanValidator",
    "RunReport",
    "__version__",
    "build_default_registry",
    "build_plan",
    "plan_from_document",
    "prepare_plan",
]
