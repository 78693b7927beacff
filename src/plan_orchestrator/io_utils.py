"""Durable file helpers for run state, snapshot manifests and journals."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES
from .utils import _now_iso

_YAML_SUFFIXES = {".yaml", ".yml"}


def _flock(handle: Any, *, release: bool) -> None:
    try:
        import fcntl
    except ImportError:
        if os.name == "nt":
            import msvcrt
            handle.seek(0)
            mode = msvcrt.LK_UNLCK if release else msvcrt.LK_LOCK
            msvcrt.locking(handle.fileno(), mode, WINDOWS_LOCK_BYTES)
        return
    fcntl.flock(handle, fcntl.LOCK_UN if release else fcntl.LOCK_EX)


class FileLock:
    """Exclusive lock on a sidecar file.

    Re-entrant within a thread; other threads holding the same instance and
    other processes block until the outermost holder exits.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._guard = threading.RLock()
        self._depth = 0
        self._handle: Optional[Any] = None

    def __enter__(self) -> "FileLock":
        self._guard.acquire()
        if self._depth == 0:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.lock_path, "a+")
            _flock(self._handle, release=False)
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self._depth -= 1
            if self._depth == 0 and self._handle is not None:
                _flock(self._handle, release=True)
                self._handle.close()
                self._handle = None
        finally:
            self._guard.release()


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    _atomic_write_text(path, json.dumps(data, indent=2, default=str))


def _save_data(path: Path, data: dict[str, Any]) -> None:
    """Write ``data`` as YAML or JSON depending on the file suffix."""
    if path.suffix in _YAML_SUFFIXES:
        _atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
    else:
        _atomic_write_json(path, data)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load a JSON/YAML mapping and return (data, error_message).

    A missing file is not an error. Unreadable or malformed files return the
    default together with a message so callers never overwrite them blindly.
    """
    if not path.exists():
        return default, None
    try:
        raw = path.read_text(encoding="utf-8")
        data = yaml.safe_load(raw) if path.suffix in _YAML_SUFFIXES else json.loads(raw)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {**event}
    payload.setdefault("timestamp", _now_iso())
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read a JSON-lines file, skipping blank or corrupt lines."""
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records
