# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/cli/node.py
from pathlib import Path
from typing import Optional

import typer

from duostack.bootstrap.context import BootstrapContext
from duostack.bootstrap.machine import BootstrapMachine, BootstrapState
from duostack.bootstrap.runtime import SystemRuntime
from duostack.logging.log import init_node_logging
from duostack.observers.dispatcher import EventBus
from duostack.observers.logger import LoggerObserver

app = typer.Typer(help="duostack node agent (runs on the node at first boot)")


@app.callback()
def _root():
    """Node-side commands."""


@app.command()
def bootstrap(
    context: Path = typer.Option(Path("/etc/duostack/context.json"), "--context", "-c", help="BootstrapContext JSON"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Override the node-local log path"),
):
    """
    Drive this node through Installing -> Configuring -> [AwaitingDependency]
    -> Starting -> Running. Exits non-zero when the node ends in Failed.
    """
    ctx = BootstrapContext.from_file(context)
    logger = init_node_logging(log_file or Path(ctx.log_path), node=ctx.node_id, redact=[ctx.db_password])

    machine = BootstrapMachine(ctx, SystemRuntime(), logger=logger, bus=EventBus([LoggerObserver(logger)]))
    final = machine.run()

    typer.echo(f"[{ctx.node_id}] {final.value}")
    if final != BootstrapState.RUNNING:
        typer.echo(f"[{ctx.node_id}] {machine.error}", err=True)
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
