# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import List, Optional
from .events import BaseEvent

log = logging.getLogger("duostack")


class EventBus:
    def __init__(self, observers: Optional[List] = None):
        self._observers = observers or []

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception as exc:
                # observers must not break provisioning
                log.debug(f"observer {ob.__class__.__name__} failed: {exc}")
