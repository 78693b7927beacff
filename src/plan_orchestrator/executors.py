"""Executor contract and the typed executor registry.

Executors are opaque: the orchestrator only sees the ``TaskResult`` they
report. Routing is keyed by :class:`ExecutorKind`, never by free text.
"""

from __future__ import annotations

import json
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

from .models import ExecutorKind, ResultStatus, Task, TaskResult, TestSummary


class Executor(Protocol):
    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        ...


class ExecutorRegistry:
    """Map executor kinds to executor implementations."""

    def __init__(self, fallback: Optional[Executor] = None) -> None:
        self._executors: dict[ExecutorKind, Executor] = {}
        self._fallback = fallback

    def register(self, kind: ExecutorKind, executor: Executor) -> None:
        if not isinstance(kind, ExecutorKind):
            raise TypeError(f"Executor kind must be an ExecutorKind, got {kind!r}")
        self._executors[kind] = executor

    def get(self, kind: ExecutorKind) -> Executor:
        executor = self._executors.get(kind, self._fallback)
        if executor is None:
            raise KeyError(f"No executor registered for {kind.value}")
        return executor

    def kinds(self) -> frozenset[ExecutorKind]:
        """Kinds that resolve to an executor (all of them when a fallback exists)."""
        if self._fallback is not None:
            return frozenset(ExecutorKind)
        return frozenset(self._executors)

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, ExecutorKind) and (kind in self._executors or self._fallback is not None)


def _resolve_in_workspace(workspace: Path, rel_path: str) -> Path:
    target = (workspace / rel_path).resolve()
    root = workspace.resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path escapes workspace: {rel_path}")
    return target


class ScriptedExecutor:
    """Deterministic executor driven by ``task.metadata['scripted_results']``.

    The script is either a list (entry ``attempt - 1``, the last entry
    repeating) or a mapping keyed by attempt number with an optional
    ``default``. Each entry is a ``TaskResult`` payload and may also carry
    ``write`` (``{path: content}``) and ``delete`` (``[path]``) file actions,
    which are applied to the workspace and reported as side effects, plus
    ``delay_seconds`` to simulate long-running work.
    """

    def _entry(self, task: Task, attempt: int) -> dict[str, Any]:
        script = task.metadata.get("scripted_results")
        if isinstance(script, list) and script:
            raw = script[min(attempt, len(script)) - 1]
        elif isinstance(script, dict):
            raw = script.get(str(attempt), script.get(attempt, script.get("default")))
        else:
            raw = None
        return dict(raw) if isinstance(raw, dict) else {}

    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        entry = self._entry(task, attempt)
        delay = float(entry.pop("delay_seconds", 0) or 0)
        if delay > 0:
            time.sleep(delay)

        created: list[str] = []
        modified: list[str] = []
        deleted: list[str] = []
        writes = entry.pop("write", None)
        if isinstance(writes, dict):
            for rel_path, content in writes.items():
                target = _resolve_in_workspace(workspace, str(rel_path))
                (modified if target.exists() else created).append(str(rel_path))
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(str(content), encoding="utf-8")
        removals = entry.pop("delete", None)
        if isinstance(removals, list):
            for rel_path in removals:
                target = _resolve_in_workspace(workspace, str(rel_path))
                if target.exists():
                    target.unlink()
                    deleted.append(str(rel_path))

        entry.setdefault("status", ResultStatus.COMPLETED.value)
        result = TaskResult.from_dict(entry)
        result.files_created = [*result.files_created, *created]
        result.files_modified = [*result.files_modified, *modified]
        result.files_deleted = [*result.files_deleted, *deleted]
        return result


class CommandExecutor:
    """Run ``task.metadata['command']`` inside the workspace.

    Exit code 0 means completed. If the last non-empty stdout line is a JSON
    object it is read as the reported side effects (``files_created``,
    ``files_modified``, ``files_deleted``, ``test_summary``).
    """

    def __init__(self, timeout_seconds: float = 600.0) -> None:
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _reported(stdout: str) -> dict[str, Any]:
        for raw_line in reversed(stdout.splitlines()):
            line = raw_line.strip()
            if not line:
                continue
            if not (line.startswith("{") and line.endswith("}")):
                return {}
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}

    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        command = task.metadata.get("command")
        if not command:
            return TaskResult.failure(f"Task {task.id} has no command")
        argv = shlex.split(command) if isinstance(command, str) else [str(part) for part in command]
        timeout = float(task.metadata.get("timeout_seconds") or self.timeout_seconds)
        logger.info("Running command for task {} (attempt {}): {}", task.id, attempt, argv)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=workspace,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return TaskResult(
                status=ResultStatus.FAILED,
                error=f"Command timed out after {timeout:g}s",
                duration_seconds=time.monotonic() - start,
            )
        except OSError as exc:
            return TaskResult.failure(f"{exc.__class__.__name__}: {exc}")

        reported = self._reported(proc.stdout or "")
        error = None
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip()[-240:]
            error = f"exit code {proc.returncode}: {tail}" if tail else f"exit code {proc.returncode}"
        return TaskResult(
            status=ResultStatus.COMPLETED if proc.returncode == 0 else ResultStatus.FAILED,
            files_created=[str(p) for p in reported.get("files_created") or []],
            files_modified=[str(p) for p in reported.get("files_modified") or []],
            files_deleted=[str(p) for p in reported.get("files_deleted") or []],
            test_summary=TestSummary.from_dict(reported.get("test_summary")),
            error=error,
            duration_seconds=time.monotonic() - start,
        )


class DefaultExecutor:
    """Use the command executor for tasks that declare a command, else the script."""

    def __init__(self, command: Optional[CommandExecutor] = None, scripted: Optional[ScriptedExecutor] = None) -> None:
        self.command = command or CommandExecutor()
        self.scripted = scripted or ScriptedExecutor()

    def execute(self, *, task: Task, attempt: int, workspace: Path) -> TaskResult:
        if task.metadata.get("command"):
            return self.command.execute(task=task, attempt=attempt, workspace=workspace)
        return self.scripted.execute(task=task, attempt=attempt, workspace=workspace)


def build_default_registry(command_timeout_seconds: float = 600.0) -> ExecutorRegistry:
    return ExecutorRegistry(fallback=DefaultExecutor(CommandExecutor(command_timeout_seconds)))
