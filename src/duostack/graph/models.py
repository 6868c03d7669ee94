# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/graph/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple


class ResourceKind(str, Enum):
    COMPUTE_NODE = "ComputeNode"
    NETWORK_POLICY = "NetworkPolicy"
    KEY_MATERIAL = "KeyMaterial"
    VOLUME = "Volume"


@dataclass(frozen=True)
class Ref:
    """
    Forward reference to an attribute another resource will only have once
    it is provisioned (e.g. Ref("db-node", "private_ip")).
    """
    resource_id: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.resource_id}.{self.attribute}"


@dataclass(frozen=True, init=False)
class Format:
    """
    String expression with embedded references:
        Format("mysql://{user}@{host}:3306", host=Ref("db-node", "private_ip"), user="app")
    Non-Ref keyword values are substituted as-is.
    """
    template: str
    args: Tuple[Tuple[str, Any], ...] = ()

    def __init__(self, template: str, **kwargs: Any):
        object.__setattr__(self, "template", template)
        object.__setattr__(self, "args", tuple(sorted(kwargs.items())))


@dataclass(frozen=True)
class ResourceDescriptor:
    id: str
    kind: ResourceKind
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    # operator-supplied identity of a pre-existing resource: adopt instead of create
    existing_id: Optional[str] = None

    def references(self) -> List[Ref]:
        return list(iter_refs(self.attributes))


@dataclass(frozen=True)
class ResourceGraph:
    """
    Frozen dependency graph. `edges[id]` holds the ids `id` must wait on.
    Descriptors keep declaration order, which is the tie-breaker for ordering.
    """
    descriptors: Tuple[ResourceDescriptor, ...]
    edges: Mapping[str, Tuple[str, ...]]

    def by_id(self) -> Dict[str, ResourceDescriptor]:
        return {d.id: d for d in self.descriptors}

    def get(self, resource_id: str) -> ResourceDescriptor:
        return self.by_id()[resource_id]

    def dependents(self, resource_id: str) -> List[str]:
        return [d.id for d in self.descriptors if resource_id in self.edges[d.id]]


def iter_refs(value: Any) -> Iterator[Ref]:
    """Walk an attribute value (nested dict/list/Format) yielding every Ref."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Format):
        for _, v in value.args:
            yield from iter_refs(v)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for v in value:
            yield from iter_refs(v)


def resolve(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Replace every Ref/Format inside `value` using `lookup`. Literals pass through."""
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, Format):
        kwargs = {k: resolve(v, lookup) for k, v in value.args}
        return value.template.format(**kwargs)
    if isinstance(value, Mapping):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve(v, lookup) for v in value)
    return value
