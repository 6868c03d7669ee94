# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/provision/provider.py

from __future__ import annotations

import hashlib
import ipaddress
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..graph.models import ResourceKind


class CloudProvider(Protocol):
    """
    Contract for the cloud API. Every call returns the resource's resolved
    runtime attributes, always including "id".
    Implementations raise TransientProviderError for retryable failures.
    """

    def find(self, kind: ResourceKind, identity: str) -> Optional[Dict[str, Any]]:
        """Look up a resource previously created under a stable identity."""
        ...

    def describe(self, kind: ResourceKind, provider_id: str) -> Optional[Dict[str, Any]]:
        """Look up an operator-supplied pre-existing resource."""
        ...

    def create(
        self,
        kind: ResourceKind,
        identity: str,
        attributes: Mapping[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        ...

    def destroy(self, kind: ResourceKind, provider_id: str) -> None:
        ...


@dataclass
class Call:
    op: str
    args: tuple


class InMemoryProvider:
    """
    Local provider that fabricates addresses and ids. Used for dry runs
    (`--provider memory`) and as the stand-in cloud in tests. With a path,
    its inventory survives between CLI invocations.
    """

    _PREFIX = {
        ResourceKind.COMPUTE_NODE: "i",
        ResourceKind.NETWORK_POLICY: "sg",
        ResourceKind.KEY_MATERIAL: "key",
        ResourceKind.VOLUME: "vol",
    }

    def __init__(self, path: Optional[Path] = None, preexisting: Optional[Dict[str, Dict[str, Any]]] = None):
        self.path = Path(path) if path else None
        self.calls: List[Call] = []
        self._lock = threading.Lock()
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._by_token: Dict[str, str] = {}
        self._counter = 0
        if self.path and self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._resources = data.get("resources", {})
            self._by_token = data.get("tokens", {})
            self._counter = data.get("counter", 0)
        for pid, attrs in (preexisting or {}).items():
            self._resources[pid] = {"id": pid, "identity": None, **attrs}

    def _save(self) -> None:
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({"resources": self._resources, "tokens": self._by_token, "counter": self._counter}, indent=2),
                encoding="utf-8",
            )

    def _attributes(self, kind: ResourceKind, pid: str, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        n = self._counter
        if kind == ResourceKind.COMPUTE_NODE:
            return {
                "instance_id": pid,
                "private_ip": str(ipaddress.ip_address("10.0.1.10") + n),
                "public_ip": str(ipaddress.ip_address("203.0.113.10") + n),
                "availability_zone": attributes.get("zone", "local-a"),
            }
        if kind == ResourceKind.NETWORK_POLICY:
            return {"group_id": pid, "rules": len(attributes.get("ingress", []))}
        if kind == ResourceKind.KEY_MATERIAL:
            digest = hashlib.md5(str(attributes.get("public_key", pid)).encode()).hexdigest()
            return {"key_name": attributes.get("name", pid), "fingerprint": digest}
        return {"volume_id": pid, "size_gb": attributes.get("size_gb")}

    # ------------------ CloudProvider ------------------

    def find(self, kind: ResourceKind, identity: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.calls.append(Call("find", (kind.value, identity)))
            for r in self._resources.values():
                if r.get("identity") == identity and r.get("kind") == kind.value:
                    return dict(r)
            return None

    def describe(self, kind: ResourceKind, provider_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.calls.append(Call("describe", (kind.value, provider_id)))
            r = self._resources.get(provider_id)
            return dict(r) if r else None

    def create(self, kind, identity, attributes, idempotency_key):
        with self._lock:
            self.calls.append(Call("create", (kind.value, identity)))
            # a retry after partial success hands back the original resource
            if idempotency_key in self._by_token:
                return dict(self._resources[self._by_token[idempotency_key]])
            self._counter += 1
            pid = f"{self._PREFIX[kind]}-{self._counter:08x}"
            record = {"id": pid, "kind": kind.value, "identity": identity, **self._attributes(kind, pid, attributes)}
            self._resources[pid] = record
            self._by_token[idempotency_key] = pid
            self._save()
            return dict(record)

    def destroy(self, kind, provider_id):
        with self._lock:
            self.calls.append(Call("destroy", (kind.value, provider_id)))
            self._resources.pop(provider_id, None)
            self._by_token = {k: v for k, v in self._by_token.items() if v != provider_id}
            self._save()

    def count(self, op: str, kind: Optional[ResourceKind] = None) -> int:
        return sum(1 for c in self.calls if c.op == op and (kind is None or c.args[0] == kind.value))
