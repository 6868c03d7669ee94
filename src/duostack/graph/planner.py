# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import ResourceDescriptor, ResourceGraph
from ..errors import CycleError, GraphError, UnresolvedReferenceError

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx


def _validate(descriptors: List[ResourceDescriptor]) -> None:
    seen: Set[str] = set()
    for d in descriptors:
        if d.id in seen:
            raise GraphError(f"Duplicate resource id '{d.id}'")
        seen.add(d.id)

    for d in descriptors:
        for dep in d.depends_on:
            if dep not in seen:
                raise UnresolvedReferenceError(d.id, dep)
        for ref in d.references():
            if ref.resource_id not in seen:
                raise UnresolvedReferenceError(d.id, ref.resource_id)


def _find_cycle(remaining: Set[str], edges: Dict[str, Tuple[str, ...]], order: List[str]) -> List[str]:
    """Return the ids of one cycle among `remaining` (declaration order start)."""
    for start in order:
        if start not in remaining:
            continue
        path: List[str] = []
        on_path: Set[str] = set()
        node: Optional[str] = start
        while node is not None and node not in on_path:
            path.append(node)
            on_path.add(node)
            node = next((n for n in edges[node] if n in remaining), None)
        if node is not None:
            return path[path.index(node):]
    return sorted(remaining)


def build_graph(descriptors: Iterable[ResourceDescriptor]) -> ResourceGraph:
    """
    Validate descriptors and derive edges from explicit `depends_on` plus
    every Ref embedded in the attribute map. The graph is checked for cycles
    here so an invalid graph is never handed to the provisioner.
    """
    items = list(descriptors)
    _validate(items)

    edges: Dict[str, Tuple[str, ...]] = {}
    for d in items:
        deps: List[str] = []
        for dep in list(d.depends_on) + [r.resource_id for r in d.references()]:
            if dep != d.id and dep not in deps:
                deps.append(dep)
            elif dep == d.id:
                raise CycleError([d.id])
        edges[d.id] = tuple(deps)

    graph = ResourceGraph(descriptors=tuple(items), edges=edges)
    _topological(graph)
    return graph


def _topological(graph: ResourceGraph) -> List[ResourceDescriptor]:
    """
    Stable Kahn sort: among ready resources, the earliest declared goes first.
    """
    position = {d.id: i for i, d in enumerate(graph.descriptors)}
    by_id = graph.by_id()
    indeg: Dict[str, int] = {d.id: len(graph.edges[d.id]) for d in graph.descriptors}

    queue = deque(sorted((n for n, deg in indeg.items() if deg == 0), key=position.get))
    order: List[ResourceDescriptor] = []

    while queue:
        n = queue.popleft()
        order.append(by_id[n])
        for m in graph.dependents(n):
            indeg[m] -= 1
            if indeg[m] == 0:
                queue.append(m)
                queue = deque(sorted(queue, key=position.get))  # deterministic

    if len(order) != len(graph.descriptors):
        remaining = {n for n, deg in indeg.items() if deg > 0}
        raise CycleError(_find_cycle(remaining, dict(graph.edges), [d.id for d in graph.descriptors]))

    return order


def creation_order(graph: ResourceGraph) -> List[ResourceDescriptor]:
    return _topological(graph)


def teardown_order(graph: ResourceGraph) -> List[ResourceDescriptor]:
    return list(reversed(_topological(graph)))


def parallel_batches(graph: ResourceGraph) -> List[List[ResourceDescriptor]]:
    """
    Group resources into levels: everything in a level depends only on earlier
    levels, so members of one level have no path between them and may be
    created concurrently.
    """
    level: Dict[str, int] = {}
    for d in _topological(graph):
        level[d.id] = 1 + max((level[dep] for dep in graph.edges[d.id]), default=-1)

    batches: List[List[ResourceDescriptor]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for d in graph.descriptors:
        batches[level[d.id]].append(d)
    return batches


def plan(
    descriptors: Iterable[ResourceDescriptor],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> Tuple[ResourceGraph, List[ResourceDescriptor]]:
    """
    Build the graph and compute the creation order.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(stack="-")
    try:
        graph = build_graph(descriptors)
        order = creation_order(graph)
        if bus:
            bus.emit(PlanComputed(order=[d.id for d in order], **ctx))
        return graph, order
    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise
