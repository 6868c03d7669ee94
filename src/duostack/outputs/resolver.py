# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/outputs/resolver.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from ..errors import OutputResolutionError
from ..graph.models import resolve
from ..provision.state import StackState

MASK = "<sensitive>"


@dataclass(frozen=True)
class OutputSpec:
    name: str
    expression: Any                 # literal, Ref or Format
    sensitive: bool = False
    description: str = ""


@dataclass(frozen=True)
class ResolvedOutput:
    name: str
    value: str
    sensitive: bool = False
    description: str = ""

    def display(self, show_sensitive: bool = False) -> str:
        return self.value if (show_sensitive or not self.sensitive) else MASK


def resolve_outputs(specs: Iterable[OutputSpec], state: StackState) -> List[ResolvedOutput]:
    """
    Resolve every declared output against the attribute store. Read-only.
    A missing resource/attribute or an empty result fails with the output's name.
    """
    out: List[ResolvedOutput] = []
    for spec in specs:
        try:
            value = resolve(spec.expression, state.lookup)
        except KeyError as e:
            raise OutputResolutionError(spec.name, str(e.args[0])) from e
        if value is None or str(value) == "":
            raise OutputResolutionError(spec.name, "resolved to an empty value")
        out.append(ResolvedOutput(spec.name, str(value), spec.sensitive, spec.description))
    return out


def render_outputs(outputs: Iterable[ResolvedOutput], *, show_sensitive: bool = False) -> Dict[str, str]:
    """Default display: sensitive values are masked unless explicitly requested."""
    return {o.name: o.display(show_sensitive) for o in outputs}


def raw_output(outputs: Iterable[ResolvedOutput], name: str) -> str:
    """Explicit opt-in for a single value, sensitive or not."""
    for o in outputs:
        if o.name == name:
            return o.value
    raise OutputResolutionError(name, "no such output")
