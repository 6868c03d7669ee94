# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/cli/app.py
from pathlib import Path
from typing import Optional

import paramiko
import typer

from duostack.config.loader import load_config
from duostack.deploy.executor import down as run_down
from duostack.deploy.executor import make_provider, open_state, plan_stack
from duostack.deploy.executor import up as run_up
from duostack.errors import (
    ConfigError,
    GraphError,
    OutputResolutionError,
    PolicyViolationError,
    ProvisionError,
)
from duostack.logging.log import init_logging
from duostack.network.policy import SecurityIdentity
from duostack.observers.console import ConsoleObserver
from duostack.observers.jsonfile import JsonFileObserver
from duostack.observers.logger import LoggerObserver
from duostack.outputs.resolver import raw_output, render_outputs, resolve_outputs
from duostack.stack import APP_NODE, DB_NODE, db_password
from duostack.utils.ssh import bootstrap_status, open_ssh

app = typer.Typer(help="duostack: provision and bootstrap a database + application node pair")

ConfigOpt = typer.Option(None, "--config", "-f", help="Stack config YAML (all keys optional)")


def _load(config: Optional[Path], provider: Optional[str]):
    try:
        cfg = load_config(config)
    except ConfigError as e:
        typer.echo(f"[config] {e}", err=True)
        raise typer.Exit(code=1)
    if provider:
        cfg = cfg.model_copy(update={"provider": provider})
    return cfg


def _observers(logger, log_path: Path, events: bool):
    observers = [
        LoggerObserver(logger),
        JsonFileObserver(log_path.with_suffix(".jsonl")),
    ]
    if events:
        observers.append(ConsoleObserver())
    return observers


def _fail_before_provisioning(stage: str, err: Exception) -> None:
    typer.echo(f"[{stage}] {err}", err=True)
    typer.echo(f"[{stage}] No resources were created.", err=True)
    raise typer.Exit(code=1)


def _fail_partial(err: ProvisionError, action: str) -> None:
    typer.echo(f"\n[{action}] FAILED at resource '{err.resource_id}': {err.reason}", err=True)
    if err.partial:
        typer.echo(f"[{action}] Partial infrastructure exists: {', '.join(err.created)}", err=True)
        typer.echo(f"[{action}] Re-run `duostack {action}` to resume, or `duostack down` to clean up.", err=True)
    else:
        typer.echo(f"[{action}] No resources owned by this stack exist.", err=True)
    raise typer.Exit(code=1)


@app.command()
def plan(
    config: Optional[Path] = ConfigOpt,
):
    """
    Show creation order, parallel batches and the compiled firewall rules.
    Does not call the cloud provider.
    """
    cfg = _load(config, None)
    try:
        sp = plan_stack(cfg, open_state(cfg))
    except PolicyViolationError as e:
        _fail_before_provisioning("policy", e)
    except (GraphError, ConfigError) as e:
        _fail_before_provisioning("plan", e)

    typer.echo("Creation order:")
    for i, d in enumerate(sp.order, 1):
        deps = ", ".join(sp.graph.edges[d.id]) or "-"
        typer.echo(f"  {i}. {d.id} ({d.kind.value}) after: {deps}")
    typer.echo("Parallel batches: " + " | ".join(", ".join(b) for b in sp.batches()))

    typer.echo("Firewall:")
    for node_id, rs in sorted(sp.stack.rule_sets.items()):
        for r in rs.ingress:
            src = f"identity:{r.source.node_id}" if isinstance(r.source, SecurityIdentity) else r.source
            typer.echo(f"  {node_id} ingress {r.protocol}/{r.ports} from {src}")


@app.command()
def up(
    config: Optional[Path] = ConfigOpt,
    provider: Optional[str] = typer.Option(None, "--provider", help="Override provider (aws|memory)"),
    events: bool = typer.Option(False, "--events", help="Print lifecycle events to the console"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Verbose console logging"),
):
    """
    Provision the stack. Nodes bootstrap themselves on first boot; the
    application node waits for the database before starting.
    """
    cfg = _load(config, provider)
    state = open_state(cfg)
    logger, run_id, log_path = init_logging(
        project=cfg.project, command="up", verbose=debug, redact=[db_password(cfg, state)]
    )

    try:
        report = run_up(cfg, make_provider(cfg), state, observers=_observers(logger, log_path, events), run_id=run_id)
    except PolicyViolationError as e:
        _fail_before_provisioning("policy", e)
    except (GraphError, ConfigError) as e:
        _fail_before_provisioning("plan", e)
    except ProvisionError as e:
        _fail_partial(e, "up")
    except OutputResolutionError as e:
        typer.echo(f"[outputs] {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"\n[up] {report.provision.summary()}")
    for name, value in render_outputs(report.outputs).items():
        typer.echo(f"  {name} = {value}")
    typer.echo(f"[up] log: {log_path}")


@app.command()
def down(
    config: Optional[Path] = ConfigOpt,
    provider: Optional[str] = typer.Option(None, "--provider", help="Override provider (aws|memory)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Verbose console logging"),
):
    """Destroy the stack in reverse creation order. Adopted resources are left alone."""
    cfg = _load(config, provider)
    if not yes:
        typer.confirm(f"Destroy all resources of stack '{cfg.project}'?", abort=True)
    logger, run_id, log_path = init_logging(project=cfg.project, command="down", verbose=debug)
    try:
        report = run_down(cfg, make_provider(cfg), open_state(cfg), observers=_observers(logger, log_path, False), run_id=run_id)
    except (GraphError, ConfigError, PolicyViolationError) as e:
        _fail_before_provisioning("plan", e)
    except ProvisionError as e:
        _fail_partial(e, "down")
    typer.echo(f"[down] {report.summary()}")


@app.command()
def outputs(
    config: Optional[Path] = ConfigOpt,
    show_sensitive: bool = typer.Option(False, "--show-sensitive", help="Reveal sensitive values"),
    raw: Optional[str] = typer.Option(None, "--raw", help="Print only the raw value of one output"),
):
    """Show stack outputs. Sensitive values are masked unless asked for."""
    cfg = _load(config, None)
    state = open_state(cfg)
    try:
        sp = plan_stack(cfg, state)
        resolved = resolve_outputs(sp.stack.outputs, state)
        if raw:
            typer.echo(raw_output(resolved, raw))
            return
    except (OutputResolutionError, GraphError, ConfigError, PolicyViolationError) as e:
        typer.echo(f"[outputs] {e}", err=True)
        raise typer.Exit(code=1)
    for o in resolved:
        typer.echo(f"{o.name} = {o.display(show_sensitive)}")


@app.command()
def status(
    config: Optional[Path] = ConfigOpt,
    lines: int = typer.Option(20, "--lines", "-n", help="Log lines to show per node"),
):
    """
    Report each node's bootstrap state by reading its node-local log over SSH.
    """
    cfg = _load(config, None)
    state = open_state(cfg)
    for node_id in (DB_NODE, APP_NODE):
        if not state.has(node_id):
            typer.echo(f"[{node_id}] not provisioned")
            continue
        address = state.get(node_id).attributes.get("public_ip")
        try:
            runner = open_ssh(address, username=cfg.key.ssh_user, key_path=cfg.key.private_key_path.expanduser())
        except (OSError, paramiko.SSHException) as e:
            typer.echo(f"[{node_id}] unreachable at {address}: {e}", err=True)
            continue
        try:
            st = bootstrap_status(runner, node_id, lines=lines)
        finally:
            runner.close()
        typer.echo(f"[{node_id}] {st.state}" + (" (completed)" if st.completed else ""))
        for line in st.log_tail.splitlines():
            typer.echo(f"    {line}")


def main():
    app()


if __name__ == "__main__":
    main()
