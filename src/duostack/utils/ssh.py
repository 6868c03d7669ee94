# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/utils/ssh.py

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import paramiko

_STATE_LINE = re.compile(r"state -> (\w+)")


class SSHRunner:
    def __init__(self, client: paramiko.SSHClient):
        self.client = client

    def run(self, cmd: str, *, sudo: bool = False, timeout: Optional[int] = 60) -> Tuple[int, str, str]:
        if sudo:
            cmd = f"sudo -n bash -c {shlex.quote(cmd)}"
        _, stdout, stderr = self.client.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        return rc, out, err

    def close(self) -> None:
        self.client.close()


def open_ssh(
    address: str,
    *,
    username: str,
    key_path: Optional[Path] = None,
    port: int = 22,
    connect_timeout: float = 20.0,
) -> SSHRunner:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = None
    if key_path:
        for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
            try:
                pkey = key_cls.from_private_key_file(str(key_path))
                break
            except paramiko.SSHException:
                continue

    client.connect(
        hostname=address,
        port=port,
        username=username,
        pkey=pkey,
        timeout=connect_timeout,
        allow_agent=pkey is None,
        look_for_keys=pkey is None,
    )
    return SSHRunner(client)


@dataclass
class NodeStatus:
    node_id: str
    state: str              # last BootstrapState seen in the node log, or "Unknown"
    completed: bool
    log_tail: str


def last_state(log_text: str) -> str:
    states = _STATE_LINE.findall(log_text)
    return states[-1] if states else "Unknown"


def bootstrap_status(
    runner: SSHRunner,
    node_id: str,
    *,
    log_path: str = "/var/log/duostack-bootstrap.log",
    state_dir: str = "/var/lib/duostack",
    lines: int = 40,
) -> NodeStatus:
    """
    Read a node's bootstrap progress. The orchestrator cannot observe node
    state directly; the node-local log is the only source.
    """
    _, tail, _ = runner.run(f"tail -n {int(lines)} {shlex.quote(log_path)}", sudo=True)
    rc, _, _ = runner.run(f"test -f {shlex.quote(f'{state_dir}/bootstrap-{node_id}.done')}", sudo=True)
    return NodeStatus(node_id=node_id, state=last_state(tail), completed=rc == 0, log_tail=tail)
