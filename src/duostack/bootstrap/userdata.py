# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/userdata.py

from __future__ import annotations

from importlib import metadata
from typing import Optional

from ..errors import ConfigError
from .context import BootstrapContext
from .units import render_template

DISTRIBUTION = "duostack"


def pinned_agent() -> str:
    """Requirement for the node agent, pinned to the release running this CLI."""
    try:
        version = metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError as e:
        raise ConfigError(
            f"Cannot determine the installed {DISTRIBUTION} version to pin the node agent. "
            f"Set node_agent (e.g. '{DISTRIBUTION}==<version>')"
        ) from e
    return f"{DISTRIBUTION}=={version}"


def render_user_data(context: BootstrapContext, *, agent_requirement: Optional[str] = None) -> str:
    """
    First-boot script handed to the provider as user data. It drops the
    context on disk, installs the node agent and runs `duostack-node bootstrap`.
    """
    return render_template(
        "user_data.sh.j2",
        context=context,
        context_json=context.to_json(),
        agent_requirement=agent_requirement or pinned_agent(),
        install_attempts=context.install_attempts,
        install_backoff=int(context.install_backoff),
    )
