"""HTTP review and decision API for persisted runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from . import __version__
from .errors import StateStoreError
from .models import CheckpointDecision
from .store import RunStore, list_runs


class DecisionRequest(BaseModel):
    decision: CheckpointDecision


def create_router(project_dir: Path) -> APIRouter:
    router = APIRouter(prefix="/plans", tags=["plans"])

    def _store(plan_id: str) -> RunStore:
        try:
            store = RunStore(project_dir, plan_id)
        except StateStoreError as exc:
            raise HTTPException(status_code=400, detail=exc.to_dict()) from exc
        if not store.exists():
            raise HTTPException(status_code=404, detail=f"No run for plan {plan_id}")
        return store

    def _load(loader: Any) -> Any:
        try:
            return loader()
        except StateStoreError as exc:
            raise HTTPException(status_code=500, detail=exc.to_dict()) from exc

    @router.get("")
    def list_plans() -> dict[str, Any]:
        return {"plans": list_runs(project_dir)}

    @router.get("/{plan_id}/validation")
    def get_validation(plan_id: str) -> dict[str, Any]:
        plan = _load(_store(plan_id).load_plan)
        if plan is None:
            raise HTTPException(status_code=404, detail=f"No plan stored for {plan_id}")
        return {
            "plan_id": plan.id,
            "revision": plan.revision,
            "complexity_tier": plan.complexity_tier.value,
            "complexity_score": plan.complexity_score,
            "validation": plan.validation.to_dict() if plan.validation else None,
        }

    @router.get("/{plan_id}/state")
    def get_state(plan_id: str) -> dict[str, Any]:
        state = _load(_store(plan_id).load_state)
        payload = state.to_dict()
        payload["counts"] = state.counts()
        return payload

    @router.get("/{plan_id}/checkpoint")
    def get_checkpoint(plan_id: str) -> dict[str, Any]:
        store = _store(plan_id)
        checkpoint = _load(store.load_checkpoint)
        if checkpoint is None:
            raise HTTPException(status_code=404, detail=f"No checkpoint for plan {plan_id}")
        return {
            "checkpoint": checkpoint.to_dict(),
            "awaiting_decision": checkpoint.awaiting_decision,
            "history": [item.to_dict() for item in _load(store.history)],
        }

    @router.post("/{plan_id}/checkpoint/decision")
    def post_decision(plan_id: str, request: DecisionRequest) -> dict[str, Any]:
        store = _store(plan_id)
        try:
            checkpoint = store.record_decision(request.decision)
        except StateStoreError as exc:
            raise HTTPException(status_code=409, detail=exc.to_dict()) from exc
        logger.info("Recorded decision {} for plan {} checkpoint {}", request.decision.value, plan_id, checkpoint.index)
        return {"checkpoint": checkpoint.to_dict(), "applied": False}

    return router


def create_app(project_dir: Optional[Path] = None, enable_cors: bool = True) -> FastAPI:
    """Create the API app serving runs stored under *project_dir*."""
    root = (project_dir or Path.cwd()).resolve()
    app = FastAPI(
        title="Plan Orchestrator",
        description="Review validation results and answer checkpoint decisions",
        version=__version__,
    )
    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.state.project_dir = root

    @app.get("/")
    def index() -> dict[str, Any]:
        return {"name": "plan-orchestrator", "version": __version__, "project_dir": str(root)}

    app.include_router(create_router(root))
    return app
