from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from proofrunner.config import (
    CONFIG_FILENAME,
    ConfigError,
    RunnerConfig,
    load_config,
    save_config,
)
from proofrunner.executors import ClaudeCodeExecutor, Executor
from proofrunner.models import EXIT_CODES
from proofrunner.orchestrator import AggregateResult, Orchestrator, OrchestratorError
from proofrunner.session import SessionStore, SessionStoreError


class InvalidRequestError(click.ClickException):
    """Validation or session failure, reported with the INVALID exit code."""

    exit_code = EXIT_CODES["INVALID"]


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: RunnerConfig
    store: SessionStore
    orchestrator: Orchestrator


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _build_executor(config: RunnerConfig, project_root: Path) -> Executor:
    _ = project_root
    return ClaudeCodeExecutor(
        binary=config.executor.binary,
        progress_timeout_seconds=config.executor.progress_timeout_ms / 1000,
        overall_timeout_seconds=config.executor.overall_timeout_ms / 1000,
        soft_timeout_seconds=config.executor.soft_timeout_ms / 1000,
    )


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise InvalidRequestError(str(exc)) from exc
    store = SessionStore(project_root / config.session.evidence_dir)
    orchestrator = Orchestrator(
        _build_executor(config, project_root),
        config,
        store=store,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
    )


def _attach_event_printer(orchestrator: Orchestrator) -> None:
    def _print(event: dict[str, Any]) -> None:
        click.echo(json.dumps(event, ensure_ascii=False, default=str), err=True)

    orchestrator.on("*", _print)


def _report(result: AggregateResult) -> None:
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Stream events and debug logs.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Run coding-agent tasks and only report success backed by evidence."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise InvalidRequestError(str(exc)) from exc
    save_config(config_path, config)
    evidence_dir = project_root / config.session.evidence_dir
    evidence_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized proofrunner in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Evidence: {evidence_dir}")


@cli.command("run")
@click.argument("prompts", nargs=-1, required=True)
@click.option("--continue-on-failure", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context, prompts: tuple[str, ...], continue_on_failure: bool, config_value: str
) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    if continue_on_failure:
        runtime.config.session.continue_on_task_failure = True
    if ctx.obj.get("verbose"):
        _attach_event_printer(runtime.orchestrator)

    async def _run() -> AggregateResult:
        runtime.orchestrator.initialize(project_root)
        try:
            return await runtime.orchestrator.execute({"tasks": list(prompts)})
        finally:
            runtime.orchestrator.shutdown()

    try:
        result = asyncio.run(_run())
    except (OrchestratorError, SessionStoreError) as exc:
        raise InvalidRequestError(str(exc)) from exc

    _report(result)
    ctx.exit(result.exit_code)


@cli.command("resume")
@click.argument("session_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def resume_command(ctx: click.Context, session_id: str, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    if ctx.obj.get("verbose"):
        _attach_event_printer(runtime.orchestrator)

    async def _resume() -> AggregateResult:
        runtime.orchestrator.resume(session_id)
        try:
            return await runtime.orchestrator.execute({"tasks": []})
        finally:
            runtime.orchestrator.shutdown()

    try:
        result = asyncio.run(_resume())
    except (OrchestratorError, SessionStoreError) as exc:
        raise InvalidRequestError(str(exc)) from exc

    _report(result)
    ctx.exit(result.exit_code)


@cli.command("status")
@click.argument("session_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(session_id: str, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    try:
        state = runtime.store.load(session_id)
    except SessionStoreError as exc:
        raise InvalidRequestError(str(exc)) from exc
    if state is None:
        raise InvalidRequestError(f"Session not found: {session_id}")
    click.echo(json.dumps(state, ensure_ascii=False, indent=2))


@cli.command("sessions")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def sessions_command(config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    sessions = runtime.store.list_sessions()
    if not sessions:
        click.echo("No sessions found.")
        return
    for session_id in sessions:
        state = runtime.store.load(session_id) or {}
        click.echo(
            f"{session_id}  {state.get('status', '?')}  {state.get('overall_status', '?')}"
        )
