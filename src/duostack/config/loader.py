# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/config/loader.py

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .models import StackConfig
from ..errors import ConfigError


def load_config(path: Optional[str | Path] = None) -> StackConfig:
    """
    Load a stack config from YAML. Every key is optional; with no path the
    defaults are used as-is.
    """
    if path is None:
        return StackConfig()

    try:
        raw = Path(path).read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    # expand environment variables like ${DUOSTACK_DB_PASSWORD}
    expanded = os.path.expandvars(raw)

    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    try:
        return StackConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}:\n{e}") from e
