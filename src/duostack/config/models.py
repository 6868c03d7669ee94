# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/config/models.py

import logging
import warnings
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

log = logging.getLogger("duostack")

LATEST = "latest"


def _warn_unpinned(component: str, value: str) -> str:
    if value == LATEST:
        msg = (
            f"{component} version is '{LATEST}': runs are not reproducible and "
            f"nodes created on different days may run different releases. Pin a version."
        )
        warnings.warn(msg, stacklevel=3)
        log.warning(msg)
    return value


class KeyConfig(BaseModel):
    # use an existing provider key pair if set, else import public_key_path
    existing_key_name: Optional[str] = None
    public_key_path: Path = Path.home() / ".ssh" / "id_ed25519.pub"
    private_key_path: Path = Path.home() / ".ssh" / "id_ed25519"
    ssh_user: str = "ubuntu"


class DatabaseConfig(BaseModel):
    name: str = "appdb"
    username: str = "app"
    # generated and kept in the stack state when not given
    password: Optional[SecretStr] = None
    version: str = "8.0"
    port: int = 3306

    @field_validator("version")
    @classmethod
    def _version_pinned(cls, v: str) -> str:
        return _warn_unpinned("database", v)


class ApplicationConfig(BaseModel):
    version: str = "0.50.36"
    port: int = 3000
    java_package: str = "openjdk-17-jre-headless"
    install_dir: str = "/opt/metabase"

    @field_validator("version")
    @classmethod
    def _version_pinned(cls, v: str) -> str:
        return _warn_unpinned("application", v)

    def download_url(self) -> str:
        if self.version == LATEST:
            return "https://downloads.metabase.com/latest/metabase.jar"
        return f"https://downloads.metabase.com/v{self.version}/metabase.jar"


class StorageConfig(BaseModel):
    size_gb: int = Field(default=20, ge=1)
    volume_type: str = "gp3"
    device_name: str = "/dev/sdf"
    mount_point: str = "/var/lib/mysql"


class ReadinessConfig(BaseModel):
    interval_seconds: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=30, ge=1)
    probe: Literal["mysql", "tcp"] = "mysql"


class ProvisioningConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = 2.0
    backoff_factor: float = 2.0
    max_delay_seconds: float = 30.0
    max_workers: int = Field(default=4, ge=1)


class ServiceConfig(BaseModel):
    restart_sec: int = 5
    nofile_limit: int = 65536
    java_heap: str = "1g"


class AccessRuleConfig(BaseModel):
    """Extra access rule: `source` (a node name or "any") may reach `destination`."""
    source: str
    destination: Literal["db-node", "app-node"]
    port: int = Field(ge=0, le=65535)
    port_end: Optional[int] = Field(default=None, ge=0, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"


class StackConfig(BaseModel):
    project: str = "duostack"
    provider: Literal["aws", "memory"] = "aws"
    region: str = "us-east-1"
    zone: Optional[str] = None
    image_id: Optional[str] = None          # resolved to current Ubuntu LTS when unset
    node_size: str = "t3.small"
    admin_cidr: str = "127.0.0.1/32"         # set to your workstation's /32 for SSH
    tags: dict = Field(default_factory=dict)
    node_agent: Optional[str] = None         # pip requirement for the node agent; unset pins this release
    access_rules: List[AccessRuleConfig] = Field(default_factory=list)
    key: KeyConfig = KeyConfig()
    database: DatabaseConfig = DatabaseConfig()
    application: ApplicationConfig = ApplicationConfig()
    storage: StorageConfig = StorageConfig()
    readiness: ReadinessConfig = ReadinessConfig()
    provisioning: ProvisioningConfig = ProvisioningConfig()
    service: ServiceConfig = ServiceConfig()
    state_dir: Path = Path.home() / ".duostack" / "state"

    @field_validator("project")
    @classmethod
    def _project_name(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c == "-" for c in v):
            raise ValueError("project must be non-empty and contain only letters, digits and '-'")
        return v

    def state_path(self) -> Path:
        return self.state_dir / f"{self.project}.json"

    def common_tags(self) -> List[dict]:
        tags = {"Project": self.project, **self.tags}
        return [{"Key": k, "Value": str(v)} for k, v in tags.items()]
