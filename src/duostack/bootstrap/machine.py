# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/machine.py

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple

import pymysql
import requests

from .context import BootstrapContext
from .readiness import MysqlProbe, ReadinessPoller, ReadinessProbe, TcpProbe
from .roles import NodeRole, role_for
from .runtime import CommandError, NodeRuntime
from .units import render_unit
from ..errors import BootstrapError, DependencyUnavailableError
from ..utils.retry import backoff_delay

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import BootstrapTransition, ReadinessAttempt, new_ctx


class BootstrapState(str, Enum):
    INSTALLING = "Installing"
    CONFIGURING = "Configuring"
    AWAITING_DEPENDENCY = "AwaitingDependency"
    STARTING = "Starting"
    RUNNING = "Running"
    FAILED = "Failed"


def default_probe(ctx: BootstrapContext) -> ReadinessProbe:
    if ctx.probe == "tcp":
        return TcpProbe()
    return MysqlProbe(ctx.db_user, ctx.db_password, ctx.db_name)


class BootstrapMachine:
    """
    First-boot state machine for one node:

        Installing -> Configuring -> [AwaitingDependency] -> Starting -> Running
                 \\____________\\________________\\_____________-> Failed

    Only the application node passes through AwaitingDependency. Failed is
    terminal. Failures are never raised to the caller: they are written to
    the node-local log and reflected in `state`.
    """

    def __init__(
        self,
        ctx: BootstrapContext,
        runtime: NodeRuntime,
        *,
        probe: Optional[ReadinessProbe] = None,
        poller: Optional[ReadinessPoller] = None,
        logger: Optional[logging.Logger] = None,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
        role: Optional[NodeRole] = None,
    ):
        self.ctx = ctx
        self.runtime = runtime
        self.role = role or role_for(ctx)
        self.log = logger or logging.getLogger("duostack")
        self.bus = bus or EventBus([])
        self.run_ctx = new_ctx(stack=ctx.project)
        self.sleep = sleep
        self.probe = probe or default_probe(ctx)
        self.poller = poller or ReadinessPoller(
            ctx.readiness_interval, ctx.readiness_attempts, sleep=sleep, on_attempt=self._on_poll,
        )
        self.state: Optional[BootstrapState] = None
        self.history: List[BootstrapState] = []
        self.error: Optional[str] = None

    @property
    def marker(self) -> str:
        return f"{self.ctx.state_dir}/bootstrap-{self.ctx.node_id}.done"

    # ------------------ transitions ------------------

    def _enter(self, state: BootstrapState, detail: Optional[str] = None) -> None:
        self.state = state
        self.history.append(state)
        msg = f"state -> {state.value}" + (f": {detail}" if detail else "")
        (self.log.error if state == BootstrapState.FAILED else self.log.info)(msg)
        self.bus.emit(BootstrapTransition(node=self.ctx.node_id, state=state.value, detail=detail, **self.run_ctx))

    def _on_poll(self, attempt: int, ok: bool) -> None:
        target = f"{self.ctx.peer_address}:{self.ctx.db_port}"
        self.bus.emit(ReadinessAttempt(node=self.ctx.node_id, target=target, attempt=attempt, ok=ok, **self.run_ctx))

    # ------------------ stages ------------------

    def _install(self) -> None:
        try:
            self.role.prepare(self.runtime)
        except CommandError as e:
            raise BootstrapError(BootstrapState.INSTALLING.value, str(e)) from e

        attempts = self.ctx.install_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.role.install(self.runtime)
                return
            except (CommandError, requests.RequestException) as e:
                transient = e.transient if isinstance(e, CommandError) else True
                if not transient or attempt == attempts:
                    raise BootstrapError(BootstrapState.INSTALLING.value, str(e)) from e
                delay = backoff_delay(attempt, base=self.ctx.install_backoff)
                self.log.warning(f"install attempt {attempt}/{attempts} failed transiently; retrying in {delay:.0f}s: {e}")
                self.sleep(delay)

    def _configure(self) -> None:
        try:
            self.role.configure(self.runtime)
        except (CommandError, pymysql.err.MySQLError, OSError) as e:
            raise BootstrapError(BootstrapState.CONFIGURING.value, str(e)) from e

    def _await_dependency(self) -> int:
        return self.poller.wait(self.probe, self.ctx.peer_address, self.ctx.db_port)

    def _start(self) -> None:
        unit = self.role.unit()
        try:
            self.runtime.write_file(
                unit.path,
                render_unit(unit, project=self.ctx.project, node_id=self.ctx.node_id),
                mode=0o640,
            )
            self.runtime.reload_units()
            self.runtime.enable_service(unit.name)
            self.runtime.restart_service(unit.name)
        except (CommandError, OSError) as e:
            raise BootstrapError(BootstrapState.STARTING.value, str(e)) from e
        if not self.runtime.service_active(unit.name):
            raise BootstrapError(BootstrapState.STARTING.value, f"{unit.name} not reported active by systemd")
        try:
            self.runtime.write_file(self.marker, f"{self.ctx.node_id} {self.ctx.software_version}\n", mode=0o600)
        except OSError as e:
            raise BootstrapError(BootstrapState.STARTING.value, f"cannot record completion: {e}") from e

    # ------------------ driver ------------------

    def run(self) -> BootstrapState:
        if self.runtime.exists(self.marker):
            self.log.info(f"bootstrap already completed ({self.marker}); nothing to do")
            self._enter(BootstrapState.RUNNING, "already bootstrapped")
            return self.state

        steps: List[Tuple[BootstrapState, Callable[[], object]]] = [
            (BootstrapState.INSTALLING, self._install),
            (BootstrapState.CONFIGURING, self._configure),
        ]
        if self.ctx.has_dependency:
            steps.append((BootstrapState.AWAITING_DEPENDENCY, self._await_dependency))
        steps.append((BootstrapState.STARTING, self._start))

        self.log.info(f"bootstrapping {self.ctx.node_id} as {self.ctx.role} (version {self.ctx.software_version})")
        for state, step in steps:
            self._enter(state)
            try:
                step()
            except (BootstrapError, DependencyUnavailableError) as e:
                self.error = str(e)
                self._enter(BootstrapState.FAILED, self.error)
                return self.state

        self._enter(BootstrapState.RUNNING)
        return self.state
