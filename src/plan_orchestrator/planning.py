"""Turn a plan document into a validated, schedulable Plan."""

from __future__ import annotations

from typing import Optional

from .config import OrchestratorSettings
from .graph import build_plan, tasks_from_declarations
from .models import Plan, Requirement
from .plan_document import PlanDocument
from .validator import PlanReviser, PlanValidator, check_structure


def plan_from_document(document: PlanDocument, settings: Optional[OrchestratorSettings] = None) -> Plan:
    """Build (but do not validate) a plan from a parsed document.

    Structural checks run before layering so cycles and dangling references
    surface as validator errors rather than builder errors.
    """
    settings = settings or OrchestratorSettings()
    declarations = document.declarations()
    check_structure(tasks_from_declarations(declarations))
    return build_plan(
        declarations,
        plan_id=document.id,
        requirements=[Requirement(id=req.id, description=req.description) for req in document.requirements],
        tie_break=settings.tie_break,
        long_running_minutes=settings.long_running_minutes,
    )


def prepare_plan(
    document: PlanDocument,
    *,
    validator: PlanValidator,
    settings: Optional[OrchestratorSettings] = None,
    reviser: Optional[PlanReviser] = None,
) -> Plan:
    """Build and validate a plan, running the revision loop when needed."""
    plan = plan_from_document(document, settings)
    return validator.validate_with_revisions(plan, reviser)
