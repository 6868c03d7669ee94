# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/runtime.py

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import pymysql
import requests

log = logging.getLogger("duostack")

# apt/dpkg failures that clear up on their own
_TRANSIENT_MARKERS = (
    "Could not get lock",
    "Unable to acquire the dpkg frontend lock",
    "Temporary failure resolving",
    "Failed to fetch",
    "Connection timed out",
    "Hash Sum mismatch",
)


class CommandError(RuntimeError):
    def __init__(self, cmd: Sequence[str], rc: int, stderr: str):
        self.cmd = list(cmd)
        self.rc = rc
        self.stderr = stderr
        super().__init__(f"{shlex.join(self.cmd)} failed (rc={rc}): {stderr.strip()[-500:]}")

    @property
    def transient(self) -> bool:
        return any(m in self.stderr for m in _TRANSIENT_MARKERS)


class NodeRuntime(Protocol):
    """Everything the bootstrap machine needs from the host OS."""

    def run(self, cmd: Sequence[str], env: Optional[Dict[str, str]] = None) -> str: ...
    def install_packages(self, packages: Sequence[str]) -> None: ...
    def write_file(self, path: str, content: str, mode: int = 0o644) -> bool: ...
    def exists(self, path: str) -> bool: ...
    def download(self, url: str, dest: str) -> bool: ...
    def sql(self, statements: Sequence[Tuple[str, tuple]]) -> None: ...
    def reload_units(self) -> None: ...
    def restart_service(self, name: str) -> None: ...
    def enable_service(self, name: str) -> None: ...
    def service_active(self, name: str) -> bool: ...
    def wait_for_device(self, candidates: List[str], attempts: int = 30, interval: float = 2.0) -> Optional[str]: ...


class SystemRuntime:
    """Runs on the node itself (as root) through apt, systemd and the local MySQL socket."""

    def __init__(self, cmd_timeout: int = 900, mysql_socket: str = "/var/run/mysqld/mysqld.sock"):
        self.cmd_timeout = cmd_timeout
        self.mysql_socket = mysql_socket

    def run(self, cmd: Sequence[str], env: Optional[Dict[str, str]] = None) -> str:
        log.debug(f"$ {shlex.join(cmd)}")
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            env={**os.environ, **(env or {})},
            timeout=self.cmd_timeout,
        )
        if proc.returncode != 0:
            raise CommandError(cmd, proc.returncode, proc.stderr)
        return proc.stdout

    def install_packages(self, packages: Sequence[str]) -> None:
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self.run(["apt-get", "update", "-q"], env=env)
        self.run(["apt-get", "install", "-y", "-q", *packages], env=env)

    def write_file(self, path: str, content: str, mode: int = 0o644) -> bool:
        """Upsert: replace atomically, no-op when the content is already there."""
        target = Path(path)
        if target.exists() and target.read_text(encoding="utf-8") == content:
            os.chmod(target, mode)
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, target)
        return True

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def download(self, url: str, dest: str) -> bool:
        target = Path(dest)
        if target.exists() and target.stat().st_size > 0:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        with requests.get(url, stream=True, timeout=60) as r:
            r.raise_for_status()
            with open(tmp, "wb") as f:
                for chunk in r.iter_content(chunk_size=1 << 20):
                    f.write(chunk)
        os.replace(tmp, target)
        return True

    def sql(self, statements: Sequence[Tuple[str, tuple]]) -> None:
        # root authenticates through auth_socket on the local unix socket
        conn = pymysql.connect(unix_socket=self.mysql_socket, user="root", autocommit=True)
        try:
            with conn.cursor() as cur:
                for stmt, args in statements:
                    cur.execute(stmt, args or None)
        finally:
            conn.close()

    def reload_units(self) -> None:
        self.run(["systemctl", "daemon-reload"])

    def restart_service(self, name: str) -> None:
        self.run(["systemctl", "restart", name])

    def enable_service(self, name: str) -> None:
        self.run(["systemctl", "enable", name])

    def service_active(self, name: str) -> bool:
        try:
            return self.run(["systemctl", "is-active", name]).strip() == "active"
        except CommandError:
            return False

    def wait_for_device(self, candidates: List[str], attempts: int = 30, interval: float = 2.0) -> Optional[str]:
        """First of `candidates` to appear; EBS attachments can lag behind first boot."""
        for _ in range(attempts):
            for dev in candidates:
                if Path(dev).exists():
                    return os.path.realpath(dev)
            time.sleep(interval)
        return None
