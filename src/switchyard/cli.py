from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from switchyard.config import SwitchyardConfig, load_config, save_config
from switchyard.errors import SwitchyardError
from switchyard.orchestrator import WorkflowOrchestrator
from switchyard.registry import CapabilityRegistry
from switchyard.router import Router, RoutingContext, Task, routing_record
from switchyard.state import HistoryStore
from switchyard.workers import FixtureBackend


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: SwitchyardConfig
    registry: CapabilityRegistry
    history: HistoryStore


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
        registry = CapabilityRegistry.from_config(config.workers)
    except SwitchyardError as exc:
        raise click.ClickException(str(exc)) from exc
    history = HistoryStore(
        _resolve_path(root, config.history.path), max_records=config.history.max_records
    )
    return Runtime(root, config_path, config, registry, history)


def _record_event(history: HistoryStore, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    history.record_event(payload)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Switchyard task routing and coordination CLI."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")


@cli.command("init")
@click.option("--default-worker", default=None)
@click.option("--config", "config_value", default="switchyard.toml", show_default=True)
def init_command(default_worker: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    try:
        config = load_config(config_path)
        if default_worker:
            config.routing.default_worker = default_worker
        CapabilityRegistry.from_config(config.workers).require(
            [config.routing.default_worker], where="routing.default_worker"
        )
    except SwitchyardError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    click.echo(f"Initialized switchyard in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Default worker: {config.routing.default_worker}")


@cli.command("workers")
@click.option("--config", "config_value", default="switchyard.toml", show_default=True)
def workers_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json([profile.to_dict() for profile in runtime.registry])


@cli.command("route")
@click.argument("description")
@click.option("--tag", "tags", multiple=True)
@click.option("--command", "command", default=None)
@click.option("--priority", type=click.Choice(["normal", "high", "urgent"]), default=None)
@click.option("--last-worker", default=None)
@click.option("--active-worker", "active_workers", multiple=True)
@click.option("--config", "config_value", default="switchyard.toml", show_default=True)
def route_command(
    description: str,
    tags: tuple[str, ...],
    command: str | None,
    priority: str | None,
    last_worker: str | None,
    active_workers: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        router = Router(runtime.registry, runtime.config.routing)
        task = Task(description=description, tags=tags, priority=priority, command=command)
        decision = router.route(
            task, RoutingContext(last_worker=last_worker, active_workers=active_workers)
        )
    except SwitchyardError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.history.append_routing(routing_record(decision))
    _echo_json(decision.to_dict())


@cli.command("run")
@click.argument("description")
@click.option("--pattern", default=None, help="auto, a built-in pattern, or any custom name.")
@click.option("--tag", "tags", multiple=True)
@click.option("--config", "config_value", default="switchyard.toml", show_default=True)
def run_command(description: str, pattern: str | None, tags: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        orchestrator = WorkflowOrchestrator(
            runtime.registry,
            FixtureBackend(),
            config=runtime.config,
            event_hook=lambda event: _record_event(runtime.history, event),
            history_store=runtime.history,
        )
        result = orchestrator.run_workflow_sync(Task(description=description, tags=tags), pattern)
    except SwitchyardError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Session: {result.session_id}")
    click.echo(f"Pattern: {result.pattern}")
    click.echo(f"Phases: {', '.join(phase.phase for phase in result.phase_log)}")
    if result.success:
        click.echo("Status: completed")
    else:
        click.echo(f"Status: failed ({result.failure_kind})")
        click.echo(f"Reason: {result.failure_reason}")
    _echo_json(result.final_quality_metrics)


@cli.command("history")
@click.option("--kind", type=click.Choice(["routing", "workflow"]), default=None)
@click.option("--task-id", default=None)
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default="switchyard.toml", show_default=True)
def history_command(kind: str | None, task_id: str | None, show_events: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if show_events:
        _echo_json(runtime.history.events())
        return
    records = runtime.history.records(kind=kind, task_id=task_id)
    if not records:
        click.echo("No history records found.")
        return
    _echo_json(records)


if __name__ == "__main__":
    cli()
