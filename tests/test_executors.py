from __future__ import annotations

import sys
from pathlib import Path

import pytest

from plan_orchestrator.executors import (
    CommandExecutor,
    DefaultExecutor,
    ExecutorRegistry,
    ScriptedExecutor,
    build_default_registry,
)
from plan_orchestrator.models import ExecutorKind, ResultStatus, Task


def test_registry_routes_by_kind() -> None:
    backend = ScriptedExecutor()
    registry = ExecutorRegistry()
    registry.register(ExecutorKind.BACKEND, backend)

    assert registry.get(ExecutorKind.BACKEND) is backend
    assert ExecutorKind.BACKEND in registry
    assert ExecutorKind.ML not in registry
    assert registry.kinds() == frozenset({ExecutorKind.BACKEND})
    with pytest.raises(KeyError):
        registry.get(ExecutorKind.ML)
    with pytest.raises(TypeError):
        registry.register("backend", backend)


def test_fallback_covers_every_kind() -> None:
    registry = build_default_registry()

    assert registry.kinds() == frozenset(ExecutorKind)
    assert isinstance(registry.get(ExecutorKind.DOCS), DefaultExecutor)


def test_scripted_results_by_attempt(tmp_path: Path) -> None:
    task = Task(
        id="t",
        metadata={"scripted_results": [{"status": "failed", "error": "first"}, {"write": {"out/a.txt": "hi"}}]},
    )
    executor = ScriptedExecutor()

    first = executor.execute(task=task, attempt=1, workspace=tmp_path)
    second = executor.execute(task=task, attempt=2, workspace=tmp_path)
    third = executor.execute(task=task, attempt=3, workspace=tmp_path)

    assert first.status == ResultStatus.FAILED
    assert second.ok
    assert second.files_created == ["out/a.txt"]
    assert (tmp_path / "out" / "a.txt").read_text(encoding="utf-8") == "hi"
    assert third.files_modified == ["out/a.txt"]


def test_scripted_delete_reports_only_existing_files(tmp_path: Path) -> None:
    (tmp_path / "old.txt").write_text("x", encoding="utf-8")
    task = Task(id="t", metadata={"scripted_results": {"default": {"delete": ["old.txt", "never.txt"]}}})

    result = ScriptedExecutor().execute(task=task, attempt=1, workspace=tmp_path)

    assert result.files_deleted == ["old.txt"]
    assert not (tmp_path / "old.txt").exists()


def test_scripted_writes_cannot_escape_workspace(tmp_path: Path) -> None:
    task = Task(id="t", metadata={"scripted_results": [{"write": {"../outside.txt": "x"}}]})

    with pytest.raises(ValueError):
        ScriptedExecutor().execute(task=task, attempt=1, workspace=tmp_path)


def test_command_executor_reads_reported_side_effects(tmp_path: Path) -> None:
    script = (
        "import json, pathlib; pathlib.Path('made.txt').write_text('ok'); "
        "print('working'); "
        "print(json.dumps({'files_created': ['made.txt'], 'test_summary': {'passed': 2}}))"
    )
    task = Task(id="cmd", metadata={"command": [sys.executable, "-c", script]})

    result = CommandExecutor().execute(task=task, attempt=1, workspace=tmp_path)

    assert result.ok
    assert result.files_created == ["made.txt"]
    assert result.test_summary.passed == 2
    assert (tmp_path / "made.txt").exists()


def test_command_executor_failure(tmp_path: Path) -> None:
    task = Task(
        id="cmd",
        metadata={"command": [sys.executable, "-c", "import sys; sys.stderr.write('bad things'); sys.exit(3)"]},
    )

    result = CommandExecutor().execute(task=task, attempt=1, workspace=tmp_path)

    assert result.status == ResultStatus.FAILED
    assert result.error.startswith("exit code 3")
    assert "bad things" in result.error


def test_command_executor_timeout(tmp_path: Path) -> None:
    task = Task(
        id="cmd",
        metadata={"command": [sys.executable, "-c", "import time; time.sleep(5)"], "timeout_seconds": 0.2},
    )

    result = CommandExecutor().execute(task=task, attempt=1, workspace=tmp_path)

    assert result.status == ResultStatus.FAILED
    assert "timed out" in result.error


def test_task_without_command_fails(tmp_path: Path) -> None:
    result = CommandExecutor().execute(task=Task(id="none"), attempt=1, workspace=tmp_path)

    assert not result.ok
