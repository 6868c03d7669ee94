# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single provisioning run
    stack: str        # project/tag name of the stack

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(stack: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "stack": stack,
    }


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Network policy
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PolicyCompiled(BaseEvent):
    nodes: List[str]
    rules: int

@dataclass(frozen=True)
class PolicyRejected(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Resource lifecycle (provider)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ResourceSkipped(BaseEvent):
    name: str
    reason: str

@dataclass(frozen=True)
class ResourceAdopted(BaseEvent):
    name: str
    provider_id: str

@dataclass(frozen=True)
class ResourceCreateAttempt(BaseEvent):
    name: str
    kind: str
    attempt: int

@dataclass(frozen=True)
class ResourceCreated(BaseEvent):
    name: str
    provider_id: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class ResourceFailed(BaseEvent):
    name: str
    attempts: int
    error: str

@dataclass(frozen=True)
class ResourceDestroyed(BaseEvent):
    name: str
    provider_id: str

@dataclass(frozen=True)
class ProvisionSummary(BaseEvent):
    created: int
    adopted: int
    skipped: int
    failed: int


# ---------------------------------------------------------------------
# Node bootstrap
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BootstrapTransition(BaseEvent):
    node: str
    state: str
    detail: Optional[str] = None

@dataclass(frozen=True)
class ReadinessAttempt(BaseEvent):
    node: str
    target: str
    attempt: int
    ok: bool
