"""Batch completed work into checkpoints and roll batches back on demand.

A batch opens with a snapshot of the workspace. Because the orchestrator
never lets in-flight plus completed-in-batch tasks exceed the batch size,
a batch boundary has nothing in flight and the snapshot is exactly the
file state at the end of the previous checkpoint.
"""

from __future__ import annotations

import fnmatch
import os
import shutil
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from loguru import logger

from .constants import DEFAULT_BATCH_SIZE, DEFAULT_SNAPSHOT_IGNORE, STATE_DIR_NAME
from .errors import RollbackError
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import (
    Checkpoint,
    CheckpointDecision,
    CheckpointSummary,
    ResultStatus,
    TaskResult,
    TestSummary,
)
from .utils import _now_iso, _unique

MANIFEST_FILE = "manifest.json"
FILES_DIR = "files"


def _is_ignored(rel_path: str, patterns: Sequence[str]) -> bool:
    if rel_path == STATE_DIR_NAME or rel_path.startswith(STATE_DIR_NAME + "/"):
        return True
    return any(fnmatch.fnmatch(rel_path, pattern) for pattern in patterns)


def _walk_workspace(workspace: Path, ignore: Sequence[str]) -> Iterator[tuple[str, bool]]:
    """Yield ``(rel_path, captured)`` for workspace files.

    Ignored directories are yielded once as not captured and not descended.
    """
    root = workspace.resolve()
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        kept = []
        for name in sorted(dirnames):
            rel_path = f"{rel_dir}/{name}" if rel_dir else name
            if _is_ignored(rel_path, ignore):
                yield rel_path, False
            else:
                kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            rel_path = f"{rel_dir}/{name}" if rel_dir else name
            yield rel_path, not _is_ignored(rel_path, ignore)


def iter_workspace_files(workspace: Path, ignore: Sequence[str] = DEFAULT_SNAPSHOT_IGNORE) -> Iterable[str]:
    """Yield workspace-relative POSIX paths of regular files, skipping ignored ones."""
    for rel_path, captured in _walk_workspace(workspace, ignore):
        if captured:
            yield rel_path


def _under(rel_path: str, prefixes: set[str]) -> bool:
    parts = rel_path.split("/")
    return any("/".join(parts[:i]) in prefixes for i in range(1, len(parts) + 1))


def summarize_results(results: Sequence[dict]) -> CheckpointSummary:
    """Aggregate recorded attempt results into ordered, de-duplicated lists."""
    created: list[str] = []
    modified: list[str] = []
    deleted: list[str] = []
    tests = TestSummary()
    failures: list[dict] = []
    for entry in results:
        result = TaskResult.from_dict(entry)
        created.extend(result.files_created)
        modified.extend(result.files_modified)
        deleted.extend(result.files_deleted)
        tests = tests.merge(result.test_summary)
        if result.status == ResultStatus.FAILED:
            failures.append(
                {"task_id": entry.get("task_id"), "attempt": entry.get("attempt"), "error": result.error}
            )
    return CheckpointSummary(
        files_created=_unique(created),
        files_modified=_unique(modified),
        files_deleted=_unique(deleted),
        tests=tests,
        failures=failures,
    )


class CheckpointManager:
    """Own the current batch, its snapshot, and the rollback of its side effects."""

    def __init__(
        self,
        workspace: Path,
        snapshots_dir: Path,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        ignore: Sequence[str] = DEFAULT_SNAPSHOT_IGNORE,
        current: Optional[Checkpoint] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.workspace = workspace.resolve()
        self.snapshots_dir = snapshots_dir
        self.batch_size = batch_size
        self.ignore = tuple(ignore)
        self.current = current

    # -- batch lifecycle ----------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.current is not None and not self.current.closed

    def completed_in_batch(self) -> int:
        return len(self.current.task_ids) if self.is_open else 0

    def open_batch(self, index: int) -> Checkpoint:
        """Start batch *index*, snapshotting the workspace and pruning older snapshots."""
        if self.is_open:
            raise RuntimeError(f"Checkpoint {self.current.index} is still open")
        snapshot_dir = self.snapshots_dir / f"checkpoint-{index}"
        self._snapshot(snapshot_dir)
        self._prune_snapshots(keep=snapshot_dir)
        self.current = Checkpoint(index=index, snapshot_dir=str(snapshot_dir))
        logger.debug("Opened checkpoint {} (snapshot {})", index, snapshot_dir)
        return self.current

    def record(self, task_id: str, attempt: int, result: TaskResult) -> None:
        """Record one attempt's reported side effects in the open batch."""
        if not self.is_open:
            raise RuntimeError("No open checkpoint to record into")
        checkpoint = self.current
        checkpoint.results.append({"task_id": task_id, "attempt": attempt, **result.to_dict()})
        if task_id not in checkpoint.attempted_task_ids:
            checkpoint.attempted_task_ids.append(task_id)
        if result.ok and task_id not in checkpoint.task_ids:
            checkpoint.task_ids.append(task_id)

    def should_close(self) -> bool:
        return self.is_open and len(self.current.task_ids) >= self.batch_size

    def close(self, *, forced: bool = False) -> Checkpoint:
        """Close the open batch and attach its aggregated summary."""
        if not self.is_open:
            raise RuntimeError("No open checkpoint to close")
        checkpoint = self.current
        checkpoint.summary = summarize_results(checkpoint.results)
        checkpoint.forced = forced
        checkpoint.closed_at = _now_iso()
        logger.info(
            "Checkpoint {} closed{}: {} completed, {} created, {} modified, {} deleted, tests {}/{} passed",
            checkpoint.index,
            " (forced)" if forced else "",
            len(checkpoint.task_ids),
            len(checkpoint.summary.files_created),
            len(checkpoint.summary.files_modified),
            len(checkpoint.summary.files_deleted),
            checkpoint.summary.tests.passed,
            checkpoint.summary.tests.passed + checkpoint.summary.tests.failed,
        )
        return checkpoint

    @staticmethod
    def needs_decision(checkpoint: Checkpoint, auto_continue: bool) -> bool:
        """Return whether *checkpoint* must block for a decision.

        Any failure in the batch blocks regardless of ``auto_continue``.
        """
        summary = checkpoint.summary or summarize_results(checkpoint.results)
        return not (auto_continue and summary.fully_passing)

    def finalize(self, decision: CheckpointDecision) -> Checkpoint:
        """Apply a continue or pause decision: the batch becomes history."""
        if decision == CheckpointDecision.ROLLBACK:
            raise ValueError("Use rollback() for rollback decisions")
        checkpoint = self._awaiting()
        checkpoint.decision = decision
        checkpoint.decided_at = checkpoint.decided_at or _now_iso()
        checkpoint.applied_at = _now_iso()
        return checkpoint

    def rollback(self) -> list[str]:
        """Revert the side effects reported in the current batch.

        Works on an open batch (abort) or a closed, undecided one. Files the
        snapshot holds are restored; anything else the batch touched is
        removed. Every path is checked before the workspace is changed.

        Returns:
            Ids of every task that reported a result in the batch.

        Raises:
            RollbackError: If the snapshot is missing, a path was skipped by the
                snapshot ignore globs, a path is not a regular file, or a file
                cannot be reverted.
        """
        checkpoint = self.current
        if checkpoint is None or checkpoint.applied:
            raise RuntimeError("No checkpoint to roll back")
        summary = checkpoint.summary or summarize_results(checkpoint.results)
        snapshot_dir = Path(checkpoint.snapshot_dir) if checkpoint.snapshot_dir else None
        if snapshot_dir is None or not snapshot_dir.is_dir():
            raise RollbackError(str(snapshot_dir), "snapshot is missing")
        manifest, err = _load_data_with_error(snapshot_dir / MANIFEST_FILE, {"files": []})
        if err:
            raise RollbackError(str(snapshot_dir / MANIFEST_FILE), err)
        existed = set(manifest.get("files") or [])
        uncaptured = set(manifest.get("ignored") or [])

        touched = _unique([*summary.files_created, *summary.files_modified, *summary.files_deleted])
        plan: list[tuple[str, Path, bool]] = []
        for rel_path in touched:
            target = self._workspace_path(rel_path)
            if rel_path in existed:
                if not (snapshot_dir / FILES_DIR / rel_path).is_file():
                    raise RollbackError(rel_path, "file missing from snapshot")
            elif _under(rel_path, uncaptured):
                raise RollbackError(rel_path, "not captured by snapshot")
            if target.is_dir() and not target.is_symlink():
                raise RollbackError(rel_path, "not a regular file")
            plan.append((rel_path, target, rel_path in existed))

        for rel_path, target, restore in plan:
            try:
                if restore:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(snapshot_dir / FILES_DIR / rel_path, target)
                elif target.exists() or target.is_symlink():
                    target.unlink()
            except OSError as exc:
                raise RollbackError(rel_path, f"{exc.__class__.__name__}: {exc}") from exc

        checkpoint.summary = summary
        checkpoint.decision = CheckpointDecision.ROLLBACK
        checkpoint.decided_at = checkpoint.decided_at or _now_iso()
        checkpoint.closed_at = checkpoint.closed_at or _now_iso()
        checkpoint.applied_at = _now_iso()
        logger.warning("Rolled back checkpoint {}: reverted {} file(s)", checkpoint.index, len(touched))
        return list(checkpoint.attempted_task_ids)

    # -- helpers ------------------------------------------------------------

    def _awaiting(self) -> Checkpoint:
        checkpoint = self.current
        if checkpoint is None or not checkpoint.awaiting_decision:
            raise RuntimeError("No closed checkpoint is awaiting a decision")
        return checkpoint

    def _workspace_path(self, rel_path: str) -> Path:
        target = (self.workspace / rel_path).resolve()
        if target != self.workspace and self.workspace not in target.parents:
            raise RollbackError(rel_path, "path is outside the workspace")
        return target

    def _snapshot(self, snapshot_dir: Path) -> None:
        if snapshot_dir.exists():
            shutil.rmtree(snapshot_dir)
        files_dir = snapshot_dir / FILES_DIR
        files_dir.mkdir(parents=True, exist_ok=True)
        files: list[str] = []
        ignored: list[str] = []
        for rel_path, captured in _walk_workspace(self.workspace, self.ignore):
            (files if captured else ignored).append(rel_path)
        for rel_path in files:
            dest = files_dir / rel_path
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.workspace / rel_path, dest)
        _atomic_write_json(snapshot_dir / MANIFEST_FILE, {"files": files, "ignored": ignored, "created_at": _now_iso()})

    def _prune_snapshots(self, keep: Path) -> None:
        if not self.snapshots_dir.exists():
            return
        for child in self.snapshots_dir.iterdir():
            if child.is_dir() and child.resolve() != keep.resolve():
                shutil.rmtree(child, ignore_errors=True)
