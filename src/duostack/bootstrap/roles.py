# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/bootstrap/roles.py

from __future__ import annotations

import logging
import shlex
from typing import List

from .context import APPLICATION, DATABASE, BootstrapContext
from .runtime import CommandError, NodeRuntime
from .units import ServiceUnit, render_template
from ..errors import BootstrapError

log = logging.getLogger("duostack")

MYSQL_CONF = "/etc/mysql/mysql.conf.d/99-duostack.cnf"


class NodeRole:
    """Role-specific steps. Every step must be safe to repeat after a crash."""

    service_name: str = ""

    def __init__(self, ctx: BootstrapContext):
        self.ctx = ctx

    def packages(self) -> List[str]:
        return []

    def prepare(self, rt: NodeRuntime) -> None:
        """Runs before package installation."""

    def install(self, rt: NodeRuntime) -> None:
        rt.install_packages(self.packages())

    def configure(self, rt: NodeRuntime) -> None:
        pass

    def unit(self) -> ServiceUnit:
        raise NotImplementedError


class DatabaseRole(NodeRole):
    service_name = "mysql"

    def packages(self) -> List[str]:
        if self.ctx.software_version == "latest":
            return ["mysql-server"]
        return [f"mysql-server-{self.ctx.software_version}"]

    def _device_candidates(self) -> List[str]:
        out: List[str] = []
        if self.ctx.volume_id:
            # nitro instances expose EBS as nvme with the volume id in by-id
            out.append(f"/dev/disk/by-id/nvme-Amazon_Elastic_Block_Store_{self.ctx.volume_id.replace('-', '')}")
        if self.ctx.volume_device:
            out.append(self.ctx.volume_device)
            out.append(self.ctx.volume_device.replace("/dev/sd", "/dev/xvd"))
        return out

    def prepare(self, rt: NodeRuntime) -> None:
        """Mount the data volume on the datadir before mysql initializes it."""
        candidates = self._device_candidates()
        if not candidates:
            return
        device = rt.wait_for_device(candidates)
        if device is None:
            raise BootstrapError("Installing", f"data volume never appeared (looked for {candidates})")

        try:
            rt.run(["blkid", device])
        except CommandError:
            log.info(f"formatting {device}")
            rt.run(["mkfs.ext4", "-q", "-L", "duostack-data", device])

        mount = self.ctx.mount_point
        rt.run(["install", "-d", "-m", "755", mount])
        # fstab entry by label; replace rather than append
        rt.run([
            "sh", "-c",
            f"grep -v ' {mount} ' /etc/fstab > /etc/fstab.duostack; "
            f"echo 'LABEL=duostack-data {mount} ext4 defaults,nofail 0 2' >> /etc/fstab.duostack; "
            f"mv /etc/fstab.duostack /etc/fstab",
        ])
        try:
            rt.run(["mountpoint", "-q", mount])
        except CommandError:
            rt.run(["mount", mount])

    def configure(self, rt: NodeRuntime) -> None:
        changed = rt.write_file(
            MYSQL_CONF,
            render_template("mysqld.cnf.j2", project=self.ctx.project, node_id=self.ctx.node_id, port=self.ctx.db_port),
        )
        if changed:
            rt.restart_service(self.service_name)

        db = self.ctx.db_name.replace("`", "``")
        user, pw = self.ctx.db_user, self.ctx.db_password
        rt.sql([
            (f"CREATE DATABASE IF NOT EXISTS `{db}`", ()),
            ("CREATE USER IF NOT EXISTS %s@'%%' IDENTIFIED BY %s", (user, pw)),
            ("ALTER USER %s@'%%' IDENTIFIED BY %s", (user, pw)),
            (f"GRANT ALL PRIVILEGES ON `{db}`.* TO %s@'%%'", (user,)),
            ("FLUSH PRIVILEGES", ()),
        ])

    def unit(self) -> ServiceUnit:
        return ServiceUnit(
            name=self.service_name,
            restart_sec=self.ctx.restart_sec,
            nofile_limit=self.ctx.nofile_limit,
            dropin=True,
        )


class ApplicationRole(NodeRole):
    service_name = "metabase"
    user = "metabase"

    @property
    def jar_path(self) -> str:
        return f"{self.ctx.app_install_dir}/metabase-{self.ctx.software_version}.jar"

    def packages(self) -> List[str]:
        return [self.ctx.java_package]

    def install(self, rt: NodeRuntime) -> None:
        super().install(rt)
        if not self.ctx.app_download_url:
            raise BootstrapError("Installing", "no application download url in context")
        # "latest" always re-downloads; a pinned jar is fetched once
        if self.ctx.software_version == "latest" and rt.exists(self.jar_path):
            rt.run(["rm", "-f", self.jar_path])
        rt.download(self.ctx.app_download_url, self.jar_path)

    def configure(self, rt: NodeRuntime) -> None:
        try:
            rt.run(["id", "-u", self.user])
        except CommandError:
            rt.run(["useradd", "--system", "--home-dir", self.ctx.app_install_dir, "--shell", "/usr/sbin/nologin", self.user])
        rt.run(["chown", "-R", f"{self.user}:{self.user}", self.ctx.app_install_dir])

    def unit(self) -> ServiceUnit:
        ctx = self.ctx
        return ServiceUnit(
            name=self.service_name,
            description=f"Metabase {ctx.software_version} ({ctx.project})",
            exec_start=f"/usr/bin/java -Xmx{ctx.java_heap} -jar {shlex.quote(self.jar_path)}",
            environment={
                "MB_JETTY_PORT": str(ctx.app_port),
                "MB_DB_TYPE": "mysql",
                "MB_DB_HOST": ctx.peer_address or "",
                "MB_DB_PORT": str(ctx.db_port),
                "MB_DB_DBNAME": ctx.db_name,
                "MB_DB_USER": ctx.db_user,
                "MB_DB_PASS": ctx.db_password,
            },
            user=self.user,
            working_directory=ctx.app_install_dir,
            restart_sec=ctx.restart_sec,
            nofile_limit=ctx.nofile_limit,
        )


def role_for(ctx: BootstrapContext) -> NodeRole:
    if ctx.role == DATABASE:
        return DatabaseRole(ctx)
    if ctx.role == APPLICATION:
        return ApplicationRole(ctx)
    raise ValueError(f"Unknown node role '{ctx.role}'")
