# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..config.models import StackConfig
from ..errors import PolicyViolationError
from ..graph.models import ResourceDescriptor, ResourceGraph
from ..graph.planner import parallel_batches, plan
from ..outputs.resolver import ResolvedOutput, resolve_outputs
from ..provision.provider import CloudProvider, InMemoryProvider
from ..provision.provisioner import ProvisionOptions, ProvisionReport, Provisioner
from ..provision.state import StackState
from ..stack import Stack, build_stack

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PolicyCompiled, PolicyRejected, new_ctx

log = logging.getLogger("duostack")


@dataclass
class StackPlan:
    stack: Stack
    graph: ResourceGraph
    order: List[ResourceDescriptor]

    def batches(self) -> List[List[str]]:
        return [[d.id for d in batch] for batch in parallel_batches(self.graph)]


@dataclass
class UpReport:
    provision: ProvisionReport
    outputs: List[ResolvedOutput] = field(default_factory=list)


def make_provider(cfg: StackConfig) -> CloudProvider:
    if cfg.provider == "memory":
        return InMemoryProvider(path=cfg.state_dir / f"{cfg.project}.memory-cloud.json")
    from ..provision.aws import AwsProvider
    return AwsProvider(region=cfg.region, extra_tags=cfg.common_tags())


def provision_options(cfg: StackConfig) -> ProvisionOptions:
    p = cfg.provisioning
    return ProvisionOptions(
        max_attempts=p.max_attempts,
        base_delay=p.base_delay_seconds,
        backoff_factor=p.backoff_factor,
        max_delay=p.max_delay_seconds,
        max_workers=p.max_workers,
    )


def plan_stack(
    cfg: StackConfig,
    state: StackState,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> StackPlan:
    """
    Everything that can fail without touching the provider: policy
    compilation and graph building.
    """
    bus = bus or EventBus([])
    ctx = run_ctx or new_ctx(stack=cfg.project)
    try:
        stack = build_stack(cfg, state)
    except PolicyViolationError as e:
        bus.emit(PolicyRejected(error=str(e), **ctx))
        raise
    bus.emit(PolicyCompiled(
        nodes=sorted(stack.rule_sets),
        rules=sum(len(rs.ingress) + len(rs.egress) for rs in stack.rule_sets.values()),
        **ctx,
    ))
    graph, order = plan(stack.descriptors, bus=bus, run_ctx=ctx)
    return StackPlan(stack=stack, graph=graph, order=order)


def up(
    cfg: StackConfig,
    provider: CloudProvider,
    state: StackState,
    observers: Optional[List] = None,
    options: Optional[ProvisionOptions] = None,
    run_id: Optional[str] = None,
) -> UpReport:
    """
    Plan, provision in dependency order and resolve outputs.
    ProvisionError propagates with the failing resource and the resources
    that now exist; nothing is rolled back.
    """
    bus = EventBus(observers or [])
    ctx = new_ctx(stack=cfg.project, run_id=run_id)

    sp = plan_stack(cfg, state, bus=bus, run_ctx=ctx)
    log.debug(f"creation order: {[d.id for d in sp.order]}")

    provisioner = Provisioner(
        provider,
        state,
        project=cfg.project,
        options=options or provision_options(cfg),
        bus=bus,
        run_ctx=ctx,
        prepare=sp.stack.prepare,
    )
    report = provisioner.provision(sp.graph)
    log.info(f"provisioning finished: {report.summary()}")

    return UpReport(provision=report, outputs=resolve_outputs(sp.stack.outputs, state))


def down(
    cfg: StackConfig,
    provider: CloudProvider,
    state: StackState,
    observers: Optional[List] = None,
    options: Optional[ProvisionOptions] = None,
    run_id: Optional[str] = None,
) -> ProvisionReport:
    """Tear the stack down in strict reverse creation order."""
    bus = EventBus(observers or [])
    ctx = new_ctx(stack=cfg.project, run_id=run_id)
    sp = plan_stack(cfg, state, bus=bus, run_ctx=ctx)
    provisioner = Provisioner(
        provider, state, project=cfg.project, options=options or provision_options(cfg), bus=bus, run_ctx=ctx,
    )
    report = provisioner.teardown(sp.graph)
    log.info(f"teardown finished: {report.summary()}")
    return report


def open_state(cfg: StackConfig, path: Optional[Path] = None) -> StackState:
    return StackState(path or cfg.state_path())
