from __future__ import annotations

from pathlib import Path

from plan_orchestrator import progress
from plan_orchestrator.models import ResultStatus, Task, TaskResult
from plan_orchestrator.progress import ProgressJournal, summarize_events


def _journal(tmp_path: Path) -> ProgressJournal:
    return ProgressJournal(tmp_path / "events.jsonl", tmp_path / "summary.md", title="Task Progress: demo")


def test_start_and_stop_render_summary(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    task = Task(id="api", description="Build the API layer")

    journal.task_started(task, 1)
    assert journal.task_stopped("api", 1, TaskResult(files_created=["api.py", "routes.py"]))

    summary = (tmp_path / "summary.md").read_text(encoding="utf-8")
    assert summary.startswith("# Task Progress: demo")
    assert "| 1 | api | generic | 1 | completed |" in summary
    assert "Build the API layer" in summary
    assert "Total: 1 | Finished: 1 | Running: 0" in summary


def test_orphan_stop_is_ignored(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    assert not journal.task_stopped("ghost", 1, TaskResult())
    assert journal.events() == []
    assert not (tmp_path / "summary.md").exists()


def test_attempts_are_tracked_separately(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    task = Task(id="flaky")
    journal.task_started(task, 1)
    journal.task_stopped("flaky", 1, TaskResult(status=ResultStatus.FAILED, error="boom"))
    journal.task_started(task, 2)

    summary = summarize_events(journal.events())

    assert "| 1 | flaky | generic | 1 | failed |" in summary
    assert "| 2 | flaky | generic | 2 | running |" in summary
    assert "Total: 2 | Finished: 1 | Running: 1" in summary


def test_long_descriptions_are_truncated() -> None:
    events = [{"event": "start", "task_id": "t", "attempt": 1, "description": "x" * 80}]

    summary = summarize_events(events)

    assert "x" * 50 + "..." in summary
    assert "x" * 51 not in summary


def test_other_events_are_journaled(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    journal.record("checkpoint_closed", index=1, forced=True)

    assert journal.events()[0]["event"] == "checkpoint_closed"
    assert journal.events()[0]["forced"] is True


def test_journal_is_read_once_across_stops(tmp_path: Path, monkeypatch) -> None:
    _journal(tmp_path).task_started(Task(id="carried"), 1)
    reads: list[Path] = []
    read_jsonl = progress._read_jsonl
    monkeypatch.setattr(progress, "_read_jsonl", lambda path: reads.append(path) or read_jsonl(path))
    journal = _journal(tmp_path)

    for attempt in range(1, 6):
        journal.task_started(Task(id="busy"), attempt)
        assert journal.task_stopped("busy", attempt, TaskResult())
    assert journal.task_stopped("carried", 1, TaskResult())
    assert not journal.task_stopped("carried", 1, TaskResult())

    assert reads == [tmp_path / "events.jsonl"]
    summary = (tmp_path / "summary.md").read_text(encoding="utf-8")
    assert "Total: 6 | Finished: 6 | Running: 0" in summary
