from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.config import ConductorConfig, load_config, save_config
from conductor.errors import ConductorError, InstructionRejectedError
from conductor.gateway import Gateway, KeywordGateway, OpenAIGateway
from conductor.orchestrator import Orchestrator
from conductor.parser import TaskParser
from conductor.state import StateStore

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ConductorConfig
    store: StateStore
    orchestrator: Orchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _build_gateway(config: ConductorConfig) -> Gateway:
    if config.gateway.provider == "openai":
        return OpenAIGateway(
            model=config.gateway.model,
            base_url=config.gateway.base_url,
            api_key_env=config.gateway.api_key_env,
            timeout_seconds=max(1.0, float(config.gateway.timeout_seconds)),
            temperature=float(config.gateway.temperature),
        )
    return KeywordGateway(
        TaskParser(
            max_tasks=config.parser.max_tasks,
            min_fragment_length=config.parser.min_fragment_length,
        )
    )


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = StateStore(root, directory=config.state.directory)
    orchestrator = Orchestrator(store=store, gateway=_build_gateway(config), config=config)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _run(awaitable: Any) -> Any:
    try:
        return asyncio.run(awaitable)
    except InstructionRejectedError as exc:
        raise click.ClickException(f"{exc} (score {exc.score:.2f})") from exc
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override [logging].level from the config file.",
)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, config_value: str) -> None:
    """Conductor CLI."""
    ctx.ensure_object(dict)
    ctx.obj["config_value"] = config_value
    root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(root, config_value))
    level = (log_level or config.logging.level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--provider", type=click.Choice(["keyword", "openai"]), default=None)
@click.pass_context
def init_command(ctx: click.Context, provider: str | None) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, ctx.obj["config_value"])
    config = load_config(config_path)
    if provider:
        config.gateway.provider = provider  # type: ignore[assignment]
    save_config(config_path, config)

    store = StateStore(root, directory=config.state.directory)
    if not store.get_context():
        store.set_context({"profiles": {}, "initialized": True})

    click.echo(f"Initialized Conductor in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Gateway: {config.gateway.provider}")
    click.echo(f"State: {store.state_dir}")


@cli.command("submit")
@click.argument("instruction")
@click.option("--session", "session_id", default="default", show_default=True)
@click.option("--dry-run", is_flag=True, default=False, help="Show the batch without executing.")
@click.pass_context
def submit_command(ctx: click.Context, instruction: str, session_id: str, dry_run: bool) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    if dry_run:
        preview = _run(runtime.orchestrator.preview(instruction, session_id=session_id))
        _echo_json(preview.to_dict())
        return
    summary = _run(runtime.orchestrator.submit(instruction, session_id=session_id))
    _echo_json(summary.to_dict())


@cli.command("approve")
@click.argument("task_id")
@click.option("--by", "approver", default="user", show_default=True)
@click.pass_context
def approve_command(ctx: click.Context, task_id: str, approver: str) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    summary = _run(runtime.orchestrator.approve(task_id, approver=approver))
    _echo_json(summary.to_dict())


@cli.command("reject")
@click.argument("task_id")
@click.option("--reason", default="", show_default=False)
@click.option("--by", "rejected_by", default="user", show_default=True)
@click.pass_context
def reject_command(ctx: click.Context, task_id: str, reason: str, rejected_by: str) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    summary = _run(
        runtime.orchestrator.reject(task_id, reason=reason, rejected_by=rejected_by)
    )
    _echo_json(summary.to_dict())


@cli.command("clarify")
@click.argument("task_id")
@click.argument("details")
@click.pass_context
def clarify_command(ctx: click.Context, task_id: str, details: str) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    summary = _run(runtime.orchestrator.clarify(task_id, details))
    _echo_json(summary.to_dict())


@cli.command("status")
@click.option("--session", "session_id", default=None)
@click.pass_context
def status_command(ctx: click.Context, session_id: str | None) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    try:
        payload = runtime.orchestrator.status(session_id)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@cli.command("audit")
@click.option("--session", "session_id", default=None)
@click.pass_context
def audit_command(ctx: click.Context, session_id: str | None) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    if session_id:
        entries = runtime.store.audit_for_session(session_id)
    else:
        entries = runtime.store.audit_entries()
    _echo_json(entries)


@cli.command("patterns")
@click.option("--approve", "approve_ref", default=None, help="Validate a pattern by TYPE:KEY.")
@click.pass_context
def patterns_command(ctx: click.Context, approve_ref: str | None) -> None:
    runtime = _runtime(ctx.obj["config_value"])
    library = runtime.orchestrator.patterns
    if approve_ref:
        pattern_type, _, pattern_key = approve_ref.partition(":")
        if not pattern_key:
            raise click.ClickException("Pattern reference must look like TYPE:KEY.")
        try:
            pattern = library.approve(pattern_type, pattern_key)
        except ConductorError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Validated {pattern['pattern_type']}:{pattern['pattern_key']}")
        return

    patterns = runtime.store.list_patterns()
    if not patterns:
        click.echo("No patterns learned.")
        return
    _echo_json(patterns)


@cli.command("gateway")
@click.argument("provider", type=click.Choice(["keyword", "openai"]))
@click.option("--model", default=None)
@click.pass_context
def gateway_command(ctx: click.Context, provider: str, model: str | None) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, ctx.obj["config_value"])
    config = load_config(config_path)
    config.gateway.provider = provider  # type: ignore[assignment]
    if model:
        config.gateway.model = model
    save_config(config_path, config)
    click.echo(f"Gateway set to {provider}")
