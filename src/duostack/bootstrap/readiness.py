# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/readiness.py

from __future__ import annotations

import logging
import socket
import time
from typing import Callable, Optional, Protocol

import pymysql

from ..errors import DependencyUnavailableError

log = logging.getLogger("duostack")


class ReadinessProbe(Protocol):
    def __call__(self, address: str, port: int) -> bool: ...


class MysqlProbe:
    """
    Full client probe: authenticate as the application user against its own
    database and run SELECT 1. Passes only once the server is up, listening
    remotely and the grants are in place.
    """

    def __init__(self, user: str, password: str, database: str, timeout: int = 5):
        self.user = user
        self.password = password
        self.database = database
        self.timeout = timeout

    def __call__(self, address: str, port: int) -> bool:
        try:
            conn = pymysql.connect(
                host=address,
                port=port,
                user=self.user,
                password=self.password,
                database=self.database,
                connect_timeout=self.timeout,
            )
        except (pymysql.err.MySQLError, OSError) as e:
            log.debug(f"mysql probe {address}:{port} not ready: {e}")
            return False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone() == (1,)
        except pymysql.err.MySQLError as e:
            log.debug(f"mysql probe {address}:{port} query failed: {e}")
            return False
        finally:
            conn.close()


class TcpProbe:
    """Handshake-only probe. Cheaper, but may pass before the server accepts logins."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def __call__(self, address: str, port: int) -> bool:
        try:
            with socket.create_connection((address, port), timeout=self.timeout):
                return True
        except OSError:
            return False


class ReadinessPoller:
    """
    Fixed-interval, bounded polling. Each attempt waits one interval and then
    probes, so a target that answers on attempt k is detected after exactly
    k intervals and an unreachable one fails after exactly `max_attempts`.
    """

    def __init__(
        self,
        interval: float = 10.0,
        max_attempts: int = 30,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_attempt: Optional[Callable[[int, bool], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.on_attempt = on_attempt

    def wait(self, probe: ReadinessProbe, address: str, port: int) -> int:
        """Return the attempt number that succeeded, or raise DependencyUnavailableError."""
        for attempt in range(1, self.max_attempts + 1):
            self.sleep(self.interval)
            ok = bool(probe(address, port))
            if self.on_attempt:
                self.on_attempt(attempt, ok)
            if ok:
                log.info(f"{address}:{port} ready on attempt {attempt}/{self.max_attempts}")
                return attempt
            log.info(f"{address}:{port} not ready (attempt {attempt}/{self.max_attempts})")
        raise DependencyUnavailableError(address, port, self.max_attempts)
