"""Load optional orchestrator configuration from `.plan_orchestrator/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_LONG_RUNNING_MINUTES,
    DEFAULT_POLL_SECONDS,
    DEFAULT_SNAPSHOT_IGNORE,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    DEFAULT_TIE_BREAK,
    DEFAULT_TIER_RETRIES,
    STATE_DIR_NAME,
    TIE_BREAK_CHOICES,
)
from .io_utils import _load_data_with_error
from .models import ComplexityTier


def load_orchestrator_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional orchestrator config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_section(config: dict[str, Any], *keys: str) -> dict[str, Any]:
    """Return a nested mapping from the config, or an empty dict if absent."""
    raw = _get_nested(config, *keys)
    return raw if isinstance(raw, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class OrchestratorSettings:
    """Runtime knobs for scheduling, checkpointing and retries."""

    concurrency: int = DEFAULT_CONCURRENCY
    batch_size: int = DEFAULT_BATCH_SIZE
    auto_continue: bool = False
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    poll_seconds: float = DEFAULT_POLL_SECONDS
    tie_break: str = DEFAULT_TIE_BREAK
    long_running_minutes: float = DEFAULT_LONG_RUNNING_MINUTES
    tier_retries: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_RETRIES), hash=False)
    max_retries_override: Optional[int] = None
    snapshot_ignore: tuple[str, ...] = DEFAULT_SNAPSHOT_IGNORE

    def max_retries_for(self, tier: ComplexityTier) -> int:
        if self.max_retries_override is not None:
            return self.max_retries_override
        return int(self.tier_retries.get(tier.value, DEFAULT_TIER_RETRIES[tier.value]))

    def with_overrides(self, **overrides: Any) -> "OrchestratorSettings":
        """Apply CLI overrides, ignoring ``None`` values."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "OrchestratorSettings":
        orch = get_section(config, "orchestrator")
        retries = get_section(config, "retries")
        snapshots = get_section(config, "snapshots")

        tier_retries = dict(DEFAULT_TIER_RETRIES)
        for tier in ComplexityTier:
            value = retries.get(tier.value)
            if isinstance(value, int) and value >= 0:
                tier_retries[tier.value] = value
        override = retries.get("max_retries")

        tie_break = str(orch.get("tie_break") or DEFAULT_TIE_BREAK)
        if tie_break not in TIE_BREAK_CHOICES:
            tie_break = DEFAULT_TIE_BREAK

        ignore = snapshots.get("ignore")
        return cls(
            concurrency=_positive_int(orch.get("concurrency"), DEFAULT_CONCURRENCY),
            batch_size=_positive_int(orch.get("batch_size"), DEFAULT_BATCH_SIZE),
            auto_continue=bool(orch.get("auto_continue", False)),
            task_timeout_seconds=_positive_float(orch.get("task_timeout_seconds"), DEFAULT_TASK_TIMEOUT_SECONDS),
            poll_seconds=_positive_float(orch.get("poll_seconds"), DEFAULT_POLL_SECONDS),
            tie_break=tie_break,
            long_running_minutes=_positive_float(orch.get("long_running_minutes"), DEFAULT_LONG_RUNNING_MINUTES),
            tier_retries=tier_retries,
            max_retries_override=override if isinstance(override, int) and override >= 0 else None,
            snapshot_ignore=tuple(str(item) for item in ignore) if isinstance(ignore, list) else DEFAULT_SNAPSHOT_IGNORE,
        )


def create_default_config() -> dict[str, Any]:
    """Create the default config written by ``plan-orchestrator init``.

    Returns:
        Default configuration dict.
    """
    return {
        "orchestrator": {
            "concurrency": DEFAULT_CONCURRENCY,
            "batch_size": DEFAULT_BATCH_SIZE,
            "auto_continue": False,
            "task_timeout_seconds": DEFAULT_TASK_TIMEOUT_SECONDS,
            "tie_break": DEFAULT_TIE_BREAK,
            "long_running_minutes": DEFAULT_LONG_RUNNING_MINUTES,
        },
        "retries": dict(DEFAULT_TIER_RETRIES),
        "validation": {
            "rubric": {
                "minor_gap_ratio": 0.8,
                "max_task_duration": 480.0,
                "max_plan_duration": 2400.0,
            },
        },
        "snapshots": {"ignore": list(DEFAULT_SNAPSHOT_IGNORE)},
    }
