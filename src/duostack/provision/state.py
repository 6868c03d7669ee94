# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/provision/state.py

from __future__ import annotations

import json
import os
import secrets
import threading
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..graph.models import Ref


@dataclass(frozen=True)
class ProvisionedResource:
    resource_id: str
    kind: str
    provider_id: str
    identity: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    created: bool = True          # False when an existing resource was adopted

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


class StackState:
    """
    Attribute store: resource id -> ProvisionedResource, optionally persisted
    as JSON after every write so an interrupted run can be resumed.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._resources: Dict[str, ProvisionedResource] = {}
        self._secrets: Dict[str, str] = {}
        self._tokens: Dict[str, str] = {}
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        for rid, r in (data.get("resources") or {}).items():
            self._resources[rid] = ProvisionedResource(**r)
        self._secrets = dict(data.get("secrets") or {})
        self._tokens = dict(data.get("tokens") or {})

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "resources": {rid: r.dict() for rid, r in self._resources.items()},
            "secrets": self._secrets,
            "tokens": self._tokens,
        }
        tmp = self.path.with_suffix(".tmp")
        # holds the db password; 0600 from creation on
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    # ------------------ resources ------------------

    def has(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._resources

    def get(self, resource_id: str) -> ProvisionedResource:
        with self._lock:
            return self._resources[resource_id]

    def put(self, resource: ProvisionedResource) -> None:
        with self._lock:
            if resource.resource_id in self._resources:
                raise ValueError(f"Resource '{resource.resource_id}' already recorded; forget it before re-provisioning")
            self._resources[resource.resource_id] = resource
            self._save()

    def forget(self, resource_id: str) -> None:
        with self._lock:
            self._resources.pop(resource_id, None)
            self._save()

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._resources)

    def lookup(self, ref: Ref) -> Any:
        """Resolve a Ref. Raises KeyError naming the missing resource/attribute."""
        with self._lock:
            if ref.resource_id not in self._resources:
                raise KeyError(f"resource '{ref.resource_id}' has not been provisioned")
            attrs = self._resources[ref.resource_id].attributes
            if ref.attribute not in attrs:
                raise KeyError(f"resource '{ref.resource_id}' has no attribute '{ref.attribute}'")
            return attrs[ref.attribute]

    # ------------------ secrets ------------------

    def secret(self, name: str, *, generate_bytes: int = 24) -> str:
        """Return a stored secret, generating and persisting it on first use."""
        with self._lock:
            if name not in self._secrets:
                self._secrets[name] = secrets.token_urlsafe(generate_bytes)
                self._save()
            return self._secrets[name]

    # ------------------ idempotency tokens ------------------

    def pending_token(self, resource_id: str) -> str:
        """
        Idempotency key for the in-flight creation of `resource_id`. It is
        persisted before the first create call and reused by every retry (and
        by a resumed run) until the resource is recorded.
        """
        with self._lock:
            if resource_id not in self._tokens:
                self._tokens[resource_id] = str(uuid.uuid4())
                self._save()
            return self._tokens[resource_id]

    def clear_token(self, resource_id: str) -> None:
        with self._lock:
            if self._tokens.pop(resource_id, None) is not None:
                self._save()
