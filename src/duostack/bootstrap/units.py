# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/units.py

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATES_DIR = Path(__file__).parent / "templates"


def _systemd_escape(value) -> str:
    # inside Environment="..." quotes; % starts a unit specifier
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")


def template_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["systemd_escape"] = _systemd_escape
    env.filters["shell_quote"] = lambda v: shlex.quote(str(v))
    return env


@dataclass(frozen=True)
class ServiceUnit:
    """
    Supervised daemon. `dropin=True` only overrides restart policy and limits
    of a unit the distro package already ships (e.g. mysql.service).
    """
    name: str
    description: str = ""
    exec_start: str = ""
    environment: Dict[str, str] = field(default_factory=dict)
    user: Optional[str] = None
    working_directory: Optional[str] = None
    restart_sec: int = 5
    nofile_limit: int = 65536
    dropin: bool = False

    @property
    def path(self) -> str:
        if self.dropin:
            return f"/etc/systemd/system/{self.name}.service.d/duostack.conf"
        return f"/etc/systemd/system/{self.name}.service"


def render_unit(unit: ServiceUnit, *, project: str, node_id: str) -> str:
    name = "service.dropin.j2" if unit.dropin else "service.unit.j2"
    return template_env().get_template(name).render(unit=unit, project=project, node_id=node_id)


def render_template(name: str, **context) -> str:
    return template_env().get_template(name).render(**context)
