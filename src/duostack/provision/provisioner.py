# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/provision/provisioner.py

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .provider import CloudProvider
from .state import ProvisionedResource, StackState
from ..errors import ProvisionError, TransientProviderError
from ..graph.models import ResourceDescriptor, ResourceGraph, resolve
from ..graph.planner import creation_order, parallel_batches, teardown_order
from ..utils.retry import backoff_delay

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    ResourceSkipped,
    ResourceAdopted,
    ResourceCreateAttempt,
    ResourceCreated,
    ResourceFailed,
    ResourceDestroyed,
    ProvisionSummary,
)

log = logging.getLogger("duostack")


@dataclass
class ProvisionOptions:
    max_attempts: int = 5
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    max_workers: int = 1
    sleep: Callable[[float], None] = time.sleep


@dataclass
class ResourceOutcome:
    name: str
    status: str                 # "CREATED" | "ADOPTED" | "SKIPPED" | "DESTROYED" | "FAILED"
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class ProvisionReport:
    outcomes: List[ResourceOutcome] = field(default_factory=list)

    def add(self, outcome: ResourceOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def summary(self) -> str:
        return " ".join(
            f"{s}={self.count(s)}" for s in ("CREATED", "ADOPTED", "SKIPPED", "DESTROYED", "FAILED")
        )


class Provisioner:
    """
    Materialize a ResourceGraph through a CloudProvider, in dependency order.

    Resources already in the state store are skipped; resources with an
    operator-supplied `existing_id`, or found under their stable identity, are
    adopted. Everything else is created with an idempotency key, retrying
    TransientProviderError with exponential backoff. Any other failure aborts
    the remaining order and leaves created resources in place.
    """

    def __init__(
        self,
        provider: CloudProvider,
        state: StackState,
        *,
        project: str,
        options: Optional[ProvisionOptions] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        prepare: Optional[Callable[[ResourceDescriptor, Dict[str, Any]], Dict[str, Any]]] = None,
    ):
        self.provider = provider
        self.state = state
        self.project = project
        self.options = options or ProvisionOptions()
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or new_ctx(stack=project)
        # last-mile rendering of resolved attributes (e.g. first-boot user data)
        self.prepare = prepare

    def identity(self, resource_id: str) -> str:
        return f"{self.project}-{resource_id}"

    # ------------------ retry ------------------

    def _call(self, name: str, fn: Callable[[], Any], on_attempt: Optional[Callable[[int], None]] = None) -> Tuple[Any, int]:
        opts = self.options
        attempt = 0
        while True:
            attempt += 1
            if on_attempt:
                on_attempt(attempt)
            try:
                return fn(), attempt
            except TransientProviderError as e:
                if attempt >= opts.max_attempts:
                    raise ProvisionError(name, f"gave up after {attempt} attempts: {e}", attempts=attempt) from e
                delay = backoff_delay(attempt, base=opts.base_delay, factor=opts.backoff_factor, cap=opts.max_delay)
                log.warning(f"[{name}] transient provider error (attempt {attempt}): {e}; retrying in {delay:.1f}s")
                opts.sleep(delay)
            except ProvisionError:
                raise
            except Exception as e:
                raise ProvisionError(name, f"{type(e).__name__}: {e}", attempts=attempt) from e

    # ------------------ single resource ------------------

    def _record(self, desc: ResourceDescriptor, attrs: Dict[str, Any], created: bool) -> ProvisionedResource:
        rec = ProvisionedResource(
            resource_id=desc.id,
            kind=desc.kind.value,
            provider_id=str(attrs["id"]),
            identity=self.identity(desc.id),
            attributes={k: v for k, v in attrs.items() if k not in ("kind", "identity")},
            created=created,
        )
        self.state.put(rec)
        self.state.clear_token(desc.id)
        return rec

    def _realize(self, desc: ResourceDescriptor) -> ResourceOutcome:
        ctx = self.run_ctx

        if self.state.has(desc.id):
            self.bus.emit(ResourceSkipped(name=desc.id, reason="already in state", **ctx))
            return ResourceOutcome(name=desc.id, status="SKIPPED")

        if desc.existing_id:
            attrs, attempts = self._call(desc.id, lambda: self.provider.describe(desc.kind, desc.existing_id))
            if not attrs:
                raise ProvisionError(desc.id, f"existing {desc.kind.value} '{desc.existing_id}' not found")
            rec = self._record(desc, {**attrs, "id": attrs.get("id", desc.existing_id)}, created=False)
            self.bus.emit(ResourceAdopted(name=desc.id, provider_id=rec.provider_id, **ctx))
            return ResourceOutcome(name=desc.id, status="ADOPTED", attempts=attempts)

        identity = self.identity(desc.id)
        found, _ = self._call(desc.id, lambda: self.provider.find(desc.kind, identity))
        if found:
            rec = self._record(desc, found, created=True)
            self.bus.emit(ResourceAdopted(name=desc.id, provider_id=rec.provider_id, **ctx))
            return ResourceOutcome(name=desc.id, status="ADOPTED")

        try:
            attributes = resolve(dict(desc.attributes), self.state.lookup)
        except KeyError as e:
            raise ProvisionError(desc.id, f"unresolved reference: {e.args[0]}") from e
        if self.prepare:
            attributes = self.prepare(desc, attributes)

        token = self.state.pending_token(desc.id)

        def _attempt(n: int) -> None:
            self.bus.emit(ResourceCreateAttempt(name=desc.id, kind=desc.kind.value, attempt=n, **ctx))

        t0 = time.time()
        attrs, attempts = self._call(
            desc.id,
            lambda: self.provider.create(desc.kind, identity, attributes, token),
            on_attempt=_attempt,
        )
        rec = self._record(desc, attrs, created=True)
        duration_ms = int((time.time() - t0) * 1000)
        self.bus.emit(ResourceCreated(name=desc.id, provider_id=rec.provider_id, attempts=attempts, duration_ms=duration_ms, **ctx))
        log.info(f"[{desc.id}] created {rec.provider_id} in {attempts} attempt(s)")
        return ResourceOutcome(name=desc.id, status="CREATED", attempts=attempts)

    def _owned(self) -> List[str]:
        return [rid for rid in self.state.ids() if self.state.get(rid).created]

    def _summarize(self, report: ProvisionReport) -> None:
        self.bus.emit(ProvisionSummary(
            created=report.count("CREATED"),
            adopted=report.count("ADOPTED"),
            skipped=report.count("SKIPPED"),
            failed=report.count("FAILED"),
            **self.run_ctx,
        ))

    # ------------------ whole graph ------------------

    def provision(self, graph: ResourceGraph) -> ProvisionReport:
        report = ProvisionReport()
        if self.options.max_workers > 1:
            batches = parallel_batches(graph)
        else:
            batches = [[d] for d in creation_order(graph)]

        with ThreadPoolExecutor(max_workers=self.options.max_workers) as pool:
            for batch in batches:
                futures = [(d, pool.submit(self._realize, d)) for d in batch]
                failure: Optional[ProvisionError] = None
                for desc, fut in futures:
                    try:
                        report.add(fut.result())
                    except ProvisionError as e:
                        report.add(ResourceOutcome(name=desc.id, status="FAILED", error=str(e)))
                        self.bus.emit(ResourceFailed(name=desc.id, attempts=e.attempts, error=str(e), **self.run_ctx))
                        failure = failure or e
                if failure:
                    self._summarize(report)
                    raise ProvisionError(failure.resource_id, failure.reason, created=self._owned(), attempts=failure.attempts) from failure

        self._summarize(report)
        return report

    def teardown(self, graph: ResourceGraph) -> ProvisionReport:
        """
        Destroy in strict reverse creation order. Adopted resources (operator
        supplied) are only forgotten, never destroyed.
        """
        report = ProvisionReport()
        for desc in teardown_order(graph):
            if not self.state.has(desc.id):
                report.add(ResourceOutcome(name=desc.id, status="SKIPPED"))
                continue
            rec = self.state.get(desc.id)
            if not rec.created:
                self.state.forget(desc.id)
                report.add(ResourceOutcome(name=desc.id, status="SKIPPED"))
                continue
            try:
                _, attempts = self._call(desc.id, lambda: self.provider.destroy(desc.kind, rec.provider_id))
            except ProvisionError as e:
                report.add(ResourceOutcome(name=desc.id, status="FAILED", error=str(e)))
                self.bus.emit(ResourceFailed(name=desc.id, attempts=e.attempts, error=str(e), **self.run_ctx))
                raise ProvisionError(desc.id, f"teardown failed: {e.reason}", created=self._owned(), attempts=e.attempts) from e
            self.state.forget(desc.id)
            self.bus.emit(ResourceDestroyed(name=desc.id, provider_id=rec.provider_id, **self.run_ctx))
            report.add(ResourceOutcome(name=desc.id, status="DESTROYED", attempts=attempts))
        return report
