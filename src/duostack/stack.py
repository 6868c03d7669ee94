# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/stack.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .bootstrap.context import APPLICATION, DATABASE, BootstrapContext
from .bootstrap.userdata import pinned_agent, render_user_data
from .config.models import StackConfig
from .errors import ConfigError
from .graph.models import Format, Ref, ResourceDescriptor, ResourceKind, resolve
from .network.policy import (
    ANY,
    AccessRule,
    NetworkRuleSet,
    PortRange,
    compile_policy,
    rule_set_attributes,
)
from .outputs.resolver import OutputSpec
from .provision.state import StackState

log = logging.getLogger("duostack")

DB_NODE = "db-node"
APP_NODE = "app-node"
KEY = "ssh-key"
DB_POLICY = "db-policy"
APP_POLICY = "app-policy"
DB_VOLUME = "db-data"

POLICY_OF = {DB_NODE: DB_POLICY, APP_NODE: APP_POLICY}


@dataclass
class Stack:
    """The two-node stack: resource descriptors, network policy and outputs."""
    config: StackConfig
    descriptors: List[ResourceDescriptor]
    access_rules: List[AccessRule]
    rule_sets: Dict[str, NetworkRuleSet]
    outputs: List[OutputSpec]
    agent: str = ""
    db_password: str = field(repr=False, default="")

    def prepare(self, desc: ResourceDescriptor, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Provisioner hook: turn a node's resolved bootstrap parameters into user data."""
        if desc.kind != ResourceKind.COMPUTE_NODE or "bootstrap" not in attributes:
            return attributes
        attrs = dict(attributes)
        ctx = BootstrapContext.from_dict(attrs.pop("bootstrap"))
        attrs["user_data"] = render_user_data(ctx, agent_requirement=self.agent)
        return attrs


def access_rules(cfg: StackConfig) -> List[AccessRule]:
    rules = [
        AccessRule(APP_NODE, DB_NODE, PortRange(cfg.database.port)),
        AccessRule(ANY, APP_NODE, PortRange(cfg.application.port)),
    ]
    for r in cfg.access_rules:
        rules.append(AccessRule(r.source, r.destination, PortRange(r.port, r.port_end), r.protocol))
    return rules


def _public_key(cfg: StackConfig) -> str:
    path = Path(cfg.key.public_key_path).expanduser()
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(
            f"Cannot read public key {path}: {e}. Set key.public_key_path or key.existing_key_name"
        ) from e


def _bootstrap_common(cfg: StackConfig, password: str) -> Dict[str, Any]:
    return {
        "project": cfg.project,
        "db_name": cfg.database.name,
        "db_user": cfg.database.username,
        "db_password": password,
        "db_port": cfg.database.port,
        "readiness_interval": cfg.readiness.interval_seconds,
        "readiness_attempts": cfg.readiness.max_attempts,
        "probe": cfg.readiness.probe,
        "restart_sec": cfg.service.restart_sec,
        "nofile_limit": cfg.service.nofile_limit,
    }


def db_password(cfg: StackConfig, state: StackState) -> str:
    """The configured password, else the one generated into state on first use."""
    if cfg.database.password:
        return cfg.database.password.get_secret_value()
    return state.secret("db_password")


def build_stack(cfg: StackConfig, state: StackState) -> Stack:
    """
    Declare the stack. Raises PolicyViolationError before anything is created
    if the access rules would expose the database port to any source.
    """
    password = db_password(cfg, state)
    zone = cfg.zone or f"{cfg.region}a"

    rules = access_rules(cfg)
    rule_sets = compile_policy(
        rules,
        [DB_NODE, APP_NODE],
        admin_cidr=cfg.admin_cidr,
        protected_ports={DB_NODE: [cfg.database.port]},
    )

    def identity_ref(node_id: str) -> Ref:
        return Ref(POLICY_OF[node_id], "group_id")

    if cfg.key.existing_key_name:
        key = ResourceDescriptor(KEY, ResourceKind.KEY_MATERIAL, {"name": cfg.key.existing_key_name},
                                 existing_id=cfg.key.existing_key_name)
    else:
        # once imported, the key material is no longer needed (e.g. for teardown)
        material = "" if state.has(KEY) else _public_key(cfg)
        key = ResourceDescriptor(KEY, ResourceKind.KEY_MATERIAL,
                                 {"name": f"{cfg.project}-key", "public_key": material})

    node_common = {
        "instance_type": cfg.node_size,
        "image_id": cfg.image_id,
        "zone": zone,
        "key_name": Ref(KEY, "key_name"),
    }

    descriptors = [
        key,
        ResourceDescriptor(APP_POLICY, ResourceKind.NETWORK_POLICY, {
            "description": f"{cfg.project} application node",
            **rule_set_attributes(rule_sets[APP_NODE], identity_ref),
        }),
        ResourceDescriptor(DB_POLICY, ResourceKind.NETWORK_POLICY, {
            "description": f"{cfg.project} database node",
            **rule_set_attributes(rule_sets[DB_NODE], identity_ref),
        }),
        ResourceDescriptor(DB_VOLUME, ResourceKind.VOLUME, {
            "zone": zone,
            "size_gb": cfg.storage.size_gb,
            "volume_type": cfg.storage.volume_type,
        }),
        ResourceDescriptor(DB_NODE, ResourceKind.COMPUTE_NODE, {
            **node_common,
            "security_groups": [Ref(DB_POLICY, "group_id")],
            "volumes": [{"volume_id": Ref(DB_VOLUME, "volume_id"), "device": cfg.storage.device_name}],
            "bootstrap": {
                **_bootstrap_common(cfg, password),
                "node_id": DB_NODE,
                "role": DATABASE,
                "software_version": cfg.database.version,
                "volume_id": Ref(DB_VOLUME, "volume_id"),
                "volume_device": cfg.storage.device_name,
                "mount_point": cfg.storage.mount_point,
            },
        }),
        ResourceDescriptor(APP_NODE, ResourceKind.COMPUTE_NODE, {
            **node_common,
            "security_groups": [Ref(APP_POLICY, "group_id")],
            "bootstrap": {
                **_bootstrap_common(cfg, password),
                "node_id": APP_NODE,
                "role": APPLICATION,
                "software_version": cfg.application.version,
                "peer_address": Ref(DB_NODE, "private_ip"),
                "app_port": cfg.application.port,
                "app_download_url": cfg.application.download_url(),
                "app_install_dir": cfg.application.install_dir,
                "java_package": cfg.application.java_package,
                "java_heap": cfg.service.java_heap,
            },
        }, depends_on=(DB_NODE,)),
    ]

    return Stack(
        config=cfg,
        descriptors=descriptors,
        access_rules=rules,
        rule_sets=rule_sets,
        outputs=declared_outputs(cfg, password),
        agent=cfg.node_agent or pinned_agent(),
        db_password=password,
    )


def declared_outputs(cfg: StackConfig, password: str) -> List[OutputSpec]:
    ssh_key = str(Path(cfg.key.private_key_path).expanduser())
    user = cfg.key.ssh_user
    return [
        OutputSpec("db_private_ip", Ref(DB_NODE, "private_ip"), description="database node private address"),
        OutputSpec("db_public_ip", Ref(DB_NODE, "public_ip"), description="database node public address"),
        OutputSpec("app_public_ip", Ref(APP_NODE, "public_ip"), description="application node public address"),
        OutputSpec(
            "app_url",
            Format("http://{ip}:{port}", ip=Ref(APP_NODE, "public_ip"), port=cfg.application.port),
            description="application URL",
        ),
        OutputSpec(
            "db_connection_string",
            Format(
                "mysql://{user}:{password}@{host}:{port}/{db}",
                user=cfg.database.username,
                password=password,
                host=Ref(DB_NODE, "private_ip"),
                port=cfg.database.port,
                db=cfg.database.name,
            ),
            sensitive=True,
            description="connection string used by the application node",
        ),
        OutputSpec("db_password", password, sensitive=True, description="database user password"),
        OutputSpec("ssh_db", Format("ssh -i {key} {user}@{ip}", key=ssh_key, user=user, ip=Ref(DB_NODE, "public_ip")),
                   description="remote shell on the database node"),
        OutputSpec("ssh_app", Format("ssh -i {key} {user}@{ip}", key=ssh_key, user=user, ip=Ref(APP_NODE, "public_ip")),
                   description="remote shell on the application node"),
        OutputSpec("key_name", Ref(KEY, "key_name"), description="key pair used by both nodes"),
        OutputSpec("db_volume_id", Ref(DB_VOLUME, "volume_id"), description="database data volume"),
    ]


def node_context(stack: Stack, state: StackState, node_id: str) -> BootstrapContext:
    """The BootstrapContext a provisioned node was (or will be) created with."""
    desc = next(d for d in stack.descriptors if d.id == node_id)
    return BootstrapContext.from_dict(resolve(desc.attributes["bootstrap"], state.lookup))
