# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/context.py

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

DATABASE = "database"
APPLICATION = "application"


@dataclass(frozen=True)
class BootstrapContext:
    """
    Parameters baked into a node at creation time. A snapshot: if the peer's
    address changes later, the node must be re-created to pick it up.
    """
    node_id: str
    role: str                                  # "database" | "application"
    project: str
    software_version: str
    db_name: str
    db_user: str
    db_password: str
    db_port: int = 3306
    # application only
    peer_address: Optional[str] = None
    app_port: int = 3000
    app_download_url: Optional[str] = None
    app_install_dir: str = "/opt/metabase"
    java_package: str = "openjdk-17-jre-headless"
    java_heap: str = "1g"
    # database only
    volume_id: Optional[str] = None
    volume_device: Optional[str] = None
    mount_point: str = "/var/lib/mysql"
    # readiness
    readiness_interval: float = 10.0
    readiness_attempts: int = 30
    probe: str = "mysql"
    # supervisor
    restart_sec: int = 5
    nofile_limit: int = 65536
    install_attempts: int = 3
    install_backoff: float = 5.0
    log_path: str = "/var/log/duostack-bootstrap.log"
    state_dir: str = "/var/lib/duostack"

    def __post_init__(self):
        if self.role not in (DATABASE, APPLICATION):
            raise ValueError(f"Unknown node role '{self.role}'")
        if self.role == APPLICATION and not self.peer_address:
            raise ValueError("application node requires the database peer address")

    @property
    def has_dependency(self) -> bool:
        return self.role == APPLICATION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootstrapContext":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_file(cls, path: Path) -> "BootstrapContext":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
