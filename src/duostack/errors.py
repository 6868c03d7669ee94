# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/errors.py
from __future__ import annotations

from typing import Iterable, List, Optional


class DuostackError(RuntimeError):
    """Base class for all duostack failures."""


class ConfigError(DuostackError):
    """Raised when the stack configuration cannot be loaded or validated."""


class GraphError(DuostackError):
    """Raised when the resource graph cannot be built. Always pre-provisioning."""


class CycleError(GraphError):
    def __init__(self, ids: Iterable[str]):
        self.ids: List[str] = list(ids)
        super().__init__(f"Cyclic dependency detected among resources: {', '.join(self.ids)}")


class UnresolvedReferenceError(GraphError):
    def __init__(self, referrer: str, missing: str):
        self.referrer = referrer
        self.missing = missing
        super().__init__(f"Resource '{referrer}' references unknown resource '{missing}'")


class PolicyViolationError(DuostackError):
    """Raised when an access rule would over-expose a protected node."""


class TransientProviderError(DuostackError):
    """Provider failure worth retrying (throttling, eventual consistency lag)."""


class ProvisionError(DuostackError):
    """
    Provider failure after retries were exhausted (or a non-transient failure).
    Resources listed in `created` already exist and must be re-run or torn down.
    """

    def __init__(self, resource_id: str, message: str, created: Optional[List[str]] = None, attempts: int = 0):
        self.resource_id = resource_id
        self.reason = message
        self.attempts = attempts
        self.created: List[str] = list(created or [])
        super().__init__(f"[{resource_id}] {message}")

    @property
    def partial(self) -> bool:
        return bool(self.created)


class BootstrapError(DuostackError):
    """Package install or configuration failure inside a node."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"[{stage}] {message}")


class DependencyUnavailableError(DuostackError):
    def __init__(self, address: str, port: int, attempts: int):
        self.address = address
        self.port = port
        self.attempts = attempts
        super().__init__(f"Dependency {address}:{port} not ready after {attempts} attempts")


class OutputResolutionError(DuostackError):
    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"Output '{name}' could not be resolved: {reason}")
