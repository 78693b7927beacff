from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import OrchestratorSettings, create_default_config, load_orchestrator_config
from .constants import (
    CONFIG_FILE,
    EXIT_ERROR,
    EXIT_ESCALATION,
    EXIT_OK,
    EXIT_ROLLBACK,
    EXIT_STRUCTURAL,
    STATE_DIR_NAME,
)
from .decisions import AutoDecider, ConsoleDecider, DecisionProvider, DeferredDecider
from .errors import EscalationRequired, OrchestratorError, PlanStructureError, RollbackError, ValidationBelowThreshold
from .executors import ExecutorRegistry, build_default_registry
from .io_utils import _save_data
from .models import CheckpointDecision, OverallStatus, Plan, RunStatus
from .orchestrator import Orchestrator, RunReport
from .plan_document import PlanDocumentError, load_plan_document
from .planning import plan_from_document, prepare_plan
from .reporting import render_checkpoint, render_dependency_tree, render_plan, render_state, render_validation
from .store import RunStore, list_runs
from .validator import PlanValidator, RubricConfig

LOG_LEVEL_ENV = "PLAN_ORCHESTRATOR_LOG_LEVEL"


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _exit_code_for(exc: OrchestratorError) -> int:
    if isinstance(exc, (PlanStructureError, PlanDocumentError)):
        return EXIT_STRUCTURAL
    if isinstance(exc, (EscalationRequired, ValidationBelowThreshold)):
        return EXIT_ESCALATION
    if isinstance(exc, RollbackError):
        return EXIT_ROLLBACK
    return EXIT_ERROR


def _report_error(exc: OrchestratorError) -> int:
    sys.stderr.write(json.dumps({"error": exc.to_dict()}, indent=2, default=str) + "\n")
    return _exit_code_for(exc)


def _settings(args: argparse.Namespace, project_dir: Path) -> tuple[dict[str, Any], OrchestratorSettings]:
    config, err = load_orchestrator_config(project_dir)
    if err:
        raise OrchestratorError(f"Invalid {STATE_DIR_NAME}/{CONFIG_FILE}: {err}")
    settings = OrchestratorSettings.from_config(config).with_overrides(
        concurrency=getattr(args, "concurrency", None),
        batch_size=getattr(args, "batch_size", None),
        auto_continue=True if getattr(args, "auto_continue", False) else None,
        max_retries_override=getattr(args, "max_retries", None),
        task_timeout_seconds=getattr(args, "task_timeout", None),
        tie_break=getattr(args, "tie_break", None),
    )
    return config, settings


def _validator(config: dict[str, Any], settings: OrchestratorSettings, registry: ExecutorRegistry) -> PlanValidator:
    return PlanValidator(
        RubricConfig.from_config(config),
        registered_executors=registry.kinds(),
        tie_break=settings.tie_break,
        long_running_minutes=settings.long_running_minutes,
    )


def _decider(mode: str) -> DecisionProvider:
    if mode == "defer":
        return DeferredDecider()
    if mode == "interactive":
        return ConsoleDecider()
    return AutoDecider(CheckpointDecision.CONTINUE)


def _run_exit_code(report: RunReport) -> int:
    if report.overall_status == OverallStatus.SUCCESS:
        return EXIT_OK
    if report.run_status == RunStatus.ABORTED:
        return EXIT_ERROR
    if report.escalations:
        return EXIT_ESCALATION
    return EXIT_OK


def _drive(orchestrator: Orchestrator, as_json: bool) -> int:
    """Run with Ctrl-C mapped to an orderly abort."""
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.request_abort())
    try:
        report = orchestrator.run()
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    if as_json:
        _write_json(report.to_dict())
    else:
        sys.stdout.write(render_state(orchestrator.state, orchestrator.plan))
        if report.awaiting_decision is not None:
            sys.stdout.write(
                f"Checkpoint {report.awaiting_decision} is awaiting a decision: "
                f"plan-orchestrator checkpoint decide {report.plan_id} <continue|rollback|pause>\n"
            )
    return _run_exit_code(report)


def _init(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if path.exists() and not args.force:
        sys.stderr.write(f"Config already exists: {path} (use --force to overwrite)\n")
        return EXIT_ERROR
    _save_data(path, create_default_config())
    _write_json({"config": str(path)})
    return EXIT_OK


def _plan_build(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    _, settings = _settings(args, project_dir)
    plan = plan_from_document(load_plan_document(Path(args.document)), settings)
    if args.json:
        _write_json(plan.to_dict())
        return EXIT_OK
    sys.stdout.write(render_plan(plan))
    if args.tree:
        sys.stdout.write(render_dependency_tree(plan))
    return EXIT_OK


def _plan_validate(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config, settings = _settings(args, project_dir)
    validator = _validator(config, settings, build_default_registry())
    document = load_plan_document(Path(args.document))
    try:
        plan = prepare_plan(document, validator=validator, settings=settings)
    except EscalationRequired as exc:
        if exc.result is not None and not args.json:
            sys.stdout.write(render_validation(exc.result, document.id))
        return _report_error(exc)
    if args.json:
        _write_json({"plan_id": plan.id, "validation": plan.validation.to_dict()})
    else:
        sys.stdout.write(render_validation(plan.validation, plan.id))
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config, settings = _settings(args, project_dir)
    registry = build_default_registry(settings.task_timeout_seconds)
    plan: Plan = prepare_plan(
        load_plan_document(Path(args.document)),
        validator=_validator(config, settings, registry),
        settings=settings,
    )
    store = RunStore(project_dir, plan.id)
    orchestrator = Orchestrator.start(
        plan,
        registry,
        store=store,
        workspace=project_dir,
        settings=settings,
        decider=_decider(args.decisions),
    )
    return _drive(orchestrator, args.json)


def _resume(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    _, settings = _settings(args, project_dir)
    orchestrator = Orchestrator.resume(
        RunStore(project_dir, args.plan_id),
        build_default_registry(settings.task_timeout_seconds),
        workspace=project_dir,
        settings=settings,
        decider=_decider(args.decisions),
        decision=args.decision,
        retry_escalated=args.retry_escalated,
    )
    return _drive(orchestrator, args.json)


def _status(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    if not args.plan_id:
        _write_json({"plans": list_runs(project_dir)})
        return EXIT_OK
    store = RunStore(project_dir, args.plan_id)
    state = store.load_state()
    if state is None:
        sys.stderr.write(f"No run for plan {args.plan_id}\n")
        return EXIT_ERROR
    if args.json:
        payload = state.to_dict()
        payload["counts"] = state.counts()
        _write_json(payload)
    else:
        sys.stdout.write(render_state(state, store.load_plan()))
    return EXIT_OK


def _checkpoint_show(args: argparse.Namespace) -> int:
    store = RunStore(_resolve_project_dir(args.project_dir), args.plan_id)
    checkpoint = store.load_checkpoint()
    if checkpoint is None:
        sys.stderr.write(f"No checkpoint for plan {args.plan_id}\n")
        return EXIT_ERROR
    if args.json:
        _write_json({"checkpoint": checkpoint.to_dict(), "awaiting_decision": checkpoint.awaiting_decision})
    else:
        sys.stdout.write(render_checkpoint(checkpoint))
    return EXIT_OK


def _checkpoint_decide(args: argparse.Namespace) -> int:
    store = RunStore(_resolve_project_dir(args.project_dir), args.plan_id)
    checkpoint = store.record_decision(args.decision)
    _write_json({"checkpoint": checkpoint.to_dict(), "applied": False})
    return EXIT_OK


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'plan-orchestrator[server]'\n")
        return EXIT_ERROR

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--decisions", default="auto", choices=["auto", "defer", "interactive"],
                        help="How checkpoint decisions are made (default: auto continue)")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--auto-continue", action="store_true",
                        help="Skip the decision for fully passing checkpoints")
    parser.add_argument("--max-retries", type=int, default=None, help="Override the per-tier retry budget")
    parser.add_argument("--task-timeout", type=float, default=None, help="Per-task deadline in seconds")
    parser.add_argument("--json", action="store_true", help="Print the run report as JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Plan Orchestrator: validate and execute task plans")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument(
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV, "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Write a default config.yaml")
    init.add_argument("--force", action="store_true")
    init.set_defaults(func=_init)

    plan = subparsers.add_parser("plan", help="Build or validate a plan document")
    plan_sub = plan.add_subparsers(dest="plan_cmd", required=True)
    pbuild = plan_sub.add_parser("build", help="Show parallel groups and the critical path")
    pbuild.add_argument("document")
    pbuild.add_argument("--tie-break", default=None, choices=["lexicographic", "reverse_lexicographic"])
    pbuild.add_argument("--tree", action="store_true", help="Also render the dependency tree")
    pbuild.add_argument("--json", action="store_true")
    pbuild.set_defaults(func=_plan_build)
    pvalidate = plan_sub.add_parser("validate", help="Score a plan against the rubric")
    pvalidate.add_argument("document")
    pvalidate.add_argument("--json", action="store_true")
    pvalidate.set_defaults(func=_plan_validate)

    run = subparsers.add_parser("run", help="Validate and execute a plan document")
    run.add_argument("document")
    _add_run_options(run)
    run.set_defaults(func=_run)

    resume = subparsers.add_parser("resume", help="Resume a paused run")
    resume.add_argument("plan_id")
    resume.add_argument("--decision", default=None, choices=[d.value for d in CheckpointDecision],
                        help="Answer the checkpoint awaiting a decision")
    resume.add_argument("--retry-escalated", action="store_true",
                        help="Give escalated tasks a fresh retry budget")
    _add_run_options(resume)
    resume.set_defaults(func=_resume)

    status = subparsers.add_parser("status", help="Show run state (or list runs)")
    status.add_argument("plan_id", nargs="?", default=None)
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_status)

    checkpoint = subparsers.add_parser("checkpoint", help="Inspect or decide the current checkpoint")
    checkpoint_sub = checkpoint.add_subparsers(dest="checkpoint_cmd", required=True)
    cshow = checkpoint_sub.add_parser("show", help="Show the current checkpoint summary")
    cshow.add_argument("plan_id")
    cshow.add_argument("--json", action="store_true")
    cshow.set_defaults(func=_checkpoint_show)
    cdecide = checkpoint_sub.add_parser("decide", help="Record a continue/rollback/pause decision")
    cdecide.add_argument("plan_id")
    cdecide.add_argument("decision", choices=[d.value for d in CheckpointDecision])
    cdecide.set_defaults(func=_checkpoint_decide)

    server = subparsers.add_parser("server", help="Start the HTTP decision API")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return EXIT_ERROR
    try:
        return int(handler(args) or 0)
    except OrchestratorError as exc:
        return _report_error(exc)
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
