"""File-backed store for a single plan run.

Layout under ``<project>/.plan_orchestrator/runs/<plan_id>/``::

    plan.yaml          validated plan
    state.json         ExecutionState
    checkpoint.json    most recent checkpoint (open, awaiting or applied)
    checkpoints.jsonl  applied checkpoints, oldest first
    events.jsonl       task start/stop journal
    summary.md         markdown summary of the journal
    snapshots/         workspace snapshot of the most recent batch

Every write is atomic (tmp file, fsync, replace) and taken under the run
lock so the CLI or HTTP API can record decisions while a run is paused.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .constants import (
    CHECKPOINT_FILE,
    CHECKPOINT_HISTORY_FILE,
    EVENTS_FILE,
    LOCK_FILE,
    PLAN_FILE,
    RUNS_DIR,
    SNAPSHOTS_DIR,
    STATE_DIR_NAME,
    STATE_FILE,
    SUMMARY_FILE,
)
from .decisions import parse_decision
from .errors import StateStoreError
from .io_utils import FileLock, _append_event, _load_data_with_error, _read_jsonl, _save_data
from .models import Checkpoint, CheckpointDecision, ExecutionState, Plan
from .utils import _now_iso


def state_dir_for(project_dir: Path) -> Path:
    return project_dir.resolve() / STATE_DIR_NAME


def list_runs(project_dir: Path) -> list[str]:
    """Return the plan ids that have a run directory, sorted."""
    runs_dir = state_dir_for(project_dir) / RUNS_DIR
    if not runs_dir.exists():
        return []
    return sorted(child.name for child in runs_dir.iterdir() if (child / STATE_FILE).exists())


class RunStore:
    def __init__(self, project_dir: Path, plan_id: str) -> None:
        if not plan_id or "/" in plan_id or plan_id in {".", ".."}:
            raise StateStoreError(f"Invalid plan id for storage: {plan_id!r}")
        self.project_dir = project_dir.resolve()
        self.plan_id = plan_id
        self.run_dir = state_dir_for(self.project_dir) / RUNS_DIR / plan_id
        self.plan_path = self.run_dir / PLAN_FILE
        self.state_path = self.run_dir / STATE_FILE
        self.checkpoint_path = self.run_dir / CHECKPOINT_FILE
        self.history_path = self.run_dir / CHECKPOINT_HISTORY_FILE
        self.events_path = self.run_dir / EVENTS_FILE
        self.summary_path = self.run_dir / SUMMARY_FILE
        self.snapshots_dir = self.run_dir / SNAPSHOTS_DIR
        self._lock = FileLock(self.run_dir / LOCK_FILE)

    def exists(self) -> bool:
        return self.state_path.exists()

    # -- internal -----------------------------------------------------------

    def _load(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            raise StateStoreError(f"Corrupt run file {err}")
        return data

    # -- plan ---------------------------------------------------------------

    def save_plan(self, plan: Plan) -> None:
        with self._lock:
            _save_data(self.plan_path, plan.to_dict())

    def load_plan(self) -> Optional[Plan]:
        data = self._load(self.plan_path)
        return Plan.from_dict(data) if data is not None else None

    # -- execution state ----------------------------------------------------

    def save_state(self, state: ExecutionState) -> None:
        state.updated_at = _now_iso()
        with self._lock:
            _save_data(self.state_path, state.to_dict())

    def load_state(self) -> Optional[ExecutionState]:
        data = self._load(self.state_path)
        return ExecutionState.from_dict(data) if data is not None else None

    # -- checkpoints --------------------------------------------------------

    def save_checkpoint(self, checkpoint: Optional[Checkpoint]) -> None:
        with self._lock:
            if checkpoint is None:
                self.checkpoint_path.unlink(missing_ok=True)
                return
            _save_data(self.checkpoint_path, checkpoint.to_dict())

    def load_checkpoint(self) -> Optional[Checkpoint]:
        data = self._load(self.checkpoint_path)
        return Checkpoint.from_dict(data) if data is not None else None

    def append_history(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            _append_event(self.history_path, checkpoint.to_dict())

    def history(self) -> list[Checkpoint]:
        return [Checkpoint.from_dict(item) for item in _read_jsonl(self.history_path)]

    def record_decision(self, decision: CheckpointDecision | str) -> Checkpoint:
        """Record an external decision on the checkpoint awaiting one.

        The decision is applied when the run is resumed.

        Raises:
            StateStoreError: If no checkpoint is awaiting a decision.
            ValueError: If *decision* is not a valid decision.
        """
        parsed = parse_decision(decision)
        with self._lock:
            data = self._load(self.checkpoint_path)
            checkpoint = Checkpoint.from_dict(data) if data is not None else None
            if checkpoint is None or not checkpoint.awaiting_decision:
                raise StateStoreError(f"Plan {self.plan_id} has no checkpoint awaiting a decision")
            checkpoint.decision = parsed
            checkpoint.decided_at = _now_iso()
            _save_data(self.checkpoint_path, checkpoint.to_dict())
        return checkpoint
