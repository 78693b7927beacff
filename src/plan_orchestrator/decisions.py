"""Checkpoint decision providers.

A provider answers a closed checkpoint with a :class:`CheckpointDecision`
or ``None`` to defer: the run is persisted and paused until a decision
arrives through the CLI or the HTTP API.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from loguru import logger
from rich.console import Console
from rich.prompt import Prompt

from .models import Checkpoint, CheckpointDecision
from .reporting import render_checkpoint


def parse_decision(value: object) -> CheckpointDecision:
    """Parse a decision, accepting only the enum values.

    Raises:
        ValueError: For anything outside ``continue``, ``rollback``, ``pause``.
    """
    if isinstance(value, CheckpointDecision):
        return value
    text = str(value or "").strip().lower()
    try:
        return CheckpointDecision(text)
    except ValueError:
        choices = ", ".join(d.value for d in CheckpointDecision)
        raise ValueError(f"Invalid decision {value!r}; expected one of: {choices}") from None


class DecisionProvider(Protocol):
    def decide(self, checkpoint: Checkpoint) -> Optional[CheckpointDecision]:
        ...


class AutoDecider:
    """Always answer with the same decision."""

    def __init__(self, decision: CheckpointDecision = CheckpointDecision.CONTINUE) -> None:
        self.decision = decision

    def decide(self, checkpoint: Checkpoint) -> Optional[CheckpointDecision]:
        return self.decision


class ScriptedDecider:
    """Answer with queued decisions in order; defer once the queue is empty."""

    def __init__(self, decisions: Iterable[CheckpointDecision | str]) -> None:
        self._queue = [parse_decision(item) for item in decisions]
        self.seen: list[int] = []

    def decide(self, checkpoint: Checkpoint) -> Optional[CheckpointDecision]:
        self.seen.append(checkpoint.index)
        if not self._queue:
            return None
        return self._queue.pop(0)


class DeferredDecider:
    def decide(self, checkpoint: Checkpoint) -> Optional[CheckpointDecision]:
        logger.info("Checkpoint {} deferred for an external decision", checkpoint.index)
        return None


class ConsoleDecider:
    """Show the checkpoint summary and prompt on the terminal."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def decide(self, checkpoint: Checkpoint) -> Optional[CheckpointDecision]:
        self.console.print()
        self.console.print("=" * 70)
        self.console.print(f"[bold yellow]CHECKPOINT {checkpoint.index}: DECISION REQUIRED[/bold yellow]")
        self.console.print("=" * 70)
        self.console.print(render_checkpoint(checkpoint), markup=False, highlight=False)
        answer = Prompt.ask(
            "Decision",
            choices=[d.value for d in CheckpointDecision],
            default=CheckpointDecision.CONTINUE.value,
            console=self.console,
        )
        decision = parse_decision(answer)
        color = {"continue": "green", "rollback": "red", "pause": "yellow"}[decision.value]
        self.console.print(f"[{color}]→ {decision.value}[/{color}]")
        return decision
