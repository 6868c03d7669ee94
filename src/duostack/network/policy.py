# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/network/policy.py

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from ..errors import PolicyViolationError

ANY = "any"
SSH_PORT = 22
ALL_PROTOCOLS = "-1"
PROTOCOLS = ("tcp", "udp", ALL_PROTOCOLS)
ALL_PORTS = (0, 65535)


@dataclass(frozen=True)
class PortRange:
    start: int
    end: Optional[int] = None

    def __post_init__(self):
        end = self.start if self.end is None else self.end
        object.__setattr__(self, "end", end)
        if not (0 <= self.start <= end <= 65535):
            raise PolicyViolationError(f"Invalid port range {self.start}-{end}")

    def contains(self, port: int) -> bool:
        return self.start <= port <= self.end

    def __str__(self) -> str:
        return str(self.start) if self.start == self.end else f"{self.start}-{self.end}"


@dataclass(frozen=True)
class SecurityIdentity:
    """Provider-level handle for a node (its security group), not its address."""
    node_id: str


Source = Union[str, SecurityIdentity]   # "any", a CIDR, or a peer identity


@dataclass(frozen=True)
class AccessRule:
    """`source` may reach `destination` on `ports`. `source` is a node id or "any"."""
    source: str
    destination: str
    ports: PortRange
    protocol: str = "tcp"


@dataclass(frozen=True)
class FirewallRule:
    direction: str            # "ingress" | "egress"
    ports: PortRange
    protocol: str
    source: Source
    description: str = ""

    @property
    def wildcard(self) -> bool:
        if self.source == ANY:
            return True
        if isinstance(self.source, str):
            return ipaddress.ip_network(self.source, strict=False).prefixlen == 0
        return False


@dataclass
class NetworkRuleSet:
    node_id: str
    ingress: List[FirewallRule] = field(default_factory=list)
    egress: List[FirewallRule] = field(default_factory=list)

    def add(self, rule: FirewallRule) -> None:
        bucket = self.ingress if rule.direction == "ingress" else self.egress
        if rule not in bucket:
            bucket.append(rule)


def _check_cidr(cidr: str) -> None:
    try:
        ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise PolicyViolationError(f"Invalid admin CIDR '{cidr}': {e}") from e


def compile_policy(
    rules: Iterable[AccessRule],
    nodes: Iterable[str],
    *,
    admin_cidr: str,
    protected_ports: Optional[Dict[str, Iterable[int]]] = None,
) -> Dict[str, NetworkRuleSet]:
    """
    Translate access rules into per-node firewall rule sets.

    A rule naming a source node becomes an ingress rule on the destination
    scoped to the source's SecurityIdentity; a rule with source "any" becomes
    a wildcard ingress rule. Each node also gets SSH from `admin_cidr` and
    allow-all egress.

    `protected_ports` maps node id -> service ports that must never be
    reachable from a wildcard source. Such input is rejected, not narrowed.
    """
    node_ids = list(nodes)
    protected = {n: set(p) for n, p in (protected_ports or {}).items()}
    _check_cidr(admin_cidr)

    sets: Dict[str, NetworkRuleSet] = {n: NetworkRuleSet(node_id=n) for n in node_ids}

    for rule in rules:
        if rule.destination not in sets:
            raise PolicyViolationError(f"Rule destination '{rule.destination}' is not a known node")
        if rule.source != ANY and rule.source not in sets:
            raise PolicyViolationError(f"Rule source '{rule.source}' is not a known node")
        if rule.source == rule.destination:
            raise PolicyViolationError(f"Rule on '{rule.destination}' names itself as source")
        if rule.protocol not in PROTOCOLS:
            raise PolicyViolationError(f"Rule on '{rule.destination}' uses unsupported protocol '{rule.protocol}'")
        # an all-protocol rule is not port scoped by the provider
        ports = PortRange(*ALL_PORTS) if rule.protocol == ALL_PROTOCOLS else rule.ports

        if rule.source == ANY:
            exposed = [p for p in protected.get(rule.destination, ()) if ports.contains(p)]
            if exposed:
                raise PolicyViolationError(
                    f"Rule would expose protected port(s) {sorted(exposed)} of "
                    f"'{rule.destination}' to any source"
                )
            source: Source = ANY
            desc = f"{rule.protocol}/{ports} from any"
        else:
            source = SecurityIdentity(rule.source)
            desc = f"{rule.protocol}/{ports} from {rule.source}"

        sets[rule.destination].add(
            FirewallRule("ingress", ports, rule.protocol, source, description=desc)
        )

    admin_ports = PortRange(SSH_PORT)
    admin_is_wildcard = ipaddress.ip_network(admin_cidr, strict=False).prefixlen == 0
    for node_id, rs in sets.items():
        if admin_is_wildcard and any(admin_ports.contains(p) for p in protected.get(node_id, ())):
            raise PolicyViolationError(
                f"Admin CIDR {admin_cidr} would expose protected port {SSH_PORT} of '{node_id}'"
            )
        rs.add(FirewallRule("ingress", admin_ports, "tcp", admin_cidr, description="ssh from operator"))
        rs.add(FirewallRule("egress", PortRange(*ALL_PORTS), ALL_PROTOCOLS, ANY, description="allow all egress"))

    return sets


def rule_set_attributes(rule_set: NetworkRuleSet, identity_ref) -> Dict[str, List[dict]]:
    """
    Render a rule set into provider attributes. Peer identities become
    whatever `identity_ref(node_id)` returns (a Ref to the peer's group id),
    so the provider binds the rule to a group, never to an address.
    """
    def _one(rule: FirewallRule) -> dict:
        out = {
            "protocol": rule.protocol,
            "from_port": rule.ports.start,
            "to_port": rule.ports.end,
            "description": rule.description,
        }
        if isinstance(rule.source, SecurityIdentity):
            out["source_group"] = identity_ref(rule.source.node_id)
        elif rule.source == ANY:
            out["cidr"] = "0.0.0.0/0"
        else:
            out["cidr"] = rule.source
        return out

    return {
        "ingress": [_one(r) for r in rule_set.ingress],
        "egress": [_one(r) for r in rule_set.egress],
    }
