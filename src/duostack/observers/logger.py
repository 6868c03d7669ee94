# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/observers/logger.py
from __future__ import annotations
import logging
from .events import BaseEvent

# events that describe a failure are logged at ERROR, everything else at INFO
_FAILURES = {"PlanFailed", "PolicyRejected", "ResourceFailed"}


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id"))
        level = logging.ERROR if etype in _FAILURES else logging.INFO
        self.logger.log(level, f"[EVENT] {etype}: {msg}")
