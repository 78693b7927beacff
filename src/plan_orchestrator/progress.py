"""Task progress journal.

Each dispatch appends a ``start`` event and each merged result a ``stop``
event to ``events.jsonl``; other run events (checkpoints, decisions,
escalations) go to the same file. After every stop the markdown summary is
regenerated from the journal. Stops without a matching start are ignored.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .io_utils import _append_event, _atomic_write_text, _read_jsonl
from .models import Task, TaskResult
from .utils import _now_iso, _parse_iso

START = "start"
STOP = "stop"


def _format_duration(seconds: Optional[float]) -> str:
    if seconds is None or seconds < 0:
        return "-"
    whole = int(seconds)
    if whole >= 60:
        return f"{whole // 60}m{whole % 60}s"
    return f"{whole}s"


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def summarize_events(events: list[dict[str, Any]], title: str = "Task Progress") -> str:
    """Render the start/stop events as a markdown table."""
    order: list[str] = []
    rows: dict[str, dict[str, Any]] = {}
    for event in events:
        kind = event.get("event")
        key = f"{event.get('task_id')}#{event.get('attempt')}"
        if kind == START:
            if key not in rows:
                order.append(key)
            rows[key] = {
                "task_id": event.get("task_id"),
                "executor": event.get("executor") or "-",
                "attempt": event.get("attempt"),
                "status": "running",
                "started": _parse_iso(event.get("timestamp")),
                "duration": None,
                "files": 0,
                "description": event.get("description") or "",
            }
        elif kind == STOP:
            row = rows.get(key)
            if row is None or row["status"] != "running":
                continue
            row["status"] = event.get("status") or "completed"
            stopped = _parse_iso(event.get("timestamp"))
            if row["started"] and stopped:
                row["duration"] = (stopped - row["started"]).total_seconds()
            row["files"] = len(event.get("files") or [])

    lines = [f"# {title}", "", "| # | Task | Executor | Attempt | Status | Duration | Files | Description |"]
    lines.append("|---|------|----------|---------|--------|----------|-------|-------------|")
    finished = running = 0
    for idx, key in enumerate(order, start=1):
        row = rows[key]
        if row["status"] == "running":
            running += 1
        else:
            finished += 1
        description = _truncate(row["description"], 50) or "-"
        lines.append(
            f"| {idx} | {row['task_id']} | {row['executor']} | {row['attempt']} | {row['status']} "
            f"| {_format_duration(row['duration'])} | {row['files'] or '-'} | {description} |"
        )
    lines.append("")
    lines.append(f"Total: {len(order)} | Finished: {finished} | Running: {running}")
    return "\n".join(lines) + "\n"


class ProgressJournal:
    def __init__(self, events_path: Path, summary_path: Path, *, title: str = "Task Progress") -> None:
        self.events_path = events_path
        self.summary_path = summary_path
        self.title = title
        # Start/stop events and unmatched starts, loaded from the journal on first use.
        self._timeline: Optional[list[dict[str, Any]]] = None
        self._open: set[tuple[str, int]] = set()

    def _load(self) -> list[dict[str, Any]]:
        if self._timeline is None:
            self._timeline = []
            for event in _read_jsonl(self.events_path):
                self._track(event)
        return self._timeline

    def _track(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind not in (START, STOP):
            return
        key = (event.get("task_id"), event.get("attempt"))
        if kind == START:
            self._open.add(key)
        else:
            self._open.discard(key)
        self._timeline.append(event)

    def task_started(self, task: Task, attempt: int) -> None:
        self._load()
        event = {
            "event": START,
            "task_id": task.id,
            "executor": task.executor_ref.value,
            "attempt": attempt,
            "description": task.description,
            "timestamp": _now_iso(),
        }
        _append_event(self.events_path, event)
        self._track(event)

    def task_stopped(self, task_id: str, attempt: int, result: TaskResult) -> bool:
        """Record a stop. Returns False (and writes nothing) for an orphan stop."""
        timeline = self._load()
        if (task_id, attempt) not in self._open:
            return False
        event = {
            "event": STOP,
            "task_id": task_id,
            "attempt": attempt,
            "status": result.status.value,
            "error": result.error,
            "files": result.touched_files(),
            "timestamp": _now_iso(),
        }
        _append_event(self.events_path, event)
        self._track(event)
        _atomic_write_text(self.summary_path, summarize_events(timeline, self.title))
        return True

    def record(self, event: str, **payload: Any) -> None:
        _append_event(self.events_path, {"event": event, **payload})

    def events(self) -> list[dict[str, Any]]:
        return _read_jsonl(self.events_path)
