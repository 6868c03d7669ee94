import pytest

from duostack.bootstrap.context import BootstrapContext
from duostack.bootstrap.runtime import CommandError


class FakeRuntime:
    """In-memory NodeRuntime: records operations, never touches the host."""

    def __init__(self, install_failures=None, active=True, devices=True):
        self.files = {}
        self.modes = {}
        self.ops = []
        self.install_failures = list(install_failures or [])
        self.active = active
        self.devices = devices
        self.sql_batches = []
        self.users = set()
        self.formatted = False

    def run(self, cmd, env=None):
        self.ops.append(("run", tuple(cmd)))
        if cmd[0] == "blkid" and not self.formatted:
            raise CommandError(cmd, 2, "")
        if cmd[0] == "mkfs.ext4":
            self.formatted = True
        if cmd[0] == "mountpoint":
            raise CommandError(cmd, 1, "")
        if cmd[:2] == ["id", "-u"] and cmd[2] not in self.users:
            raise CommandError(cmd, 1, "no such user")
        if cmd[0] == "useradd":
            self.users.add(cmd[-1])
        return ""

    def install_packages(self, packages):
        self.ops.append(("install", tuple(packages)))
        if self.install_failures:
            raise self.install_failures.pop(0)

    def write_file(self, path, content, mode=0o644):
        changed = self.files.get(path) != content
        self.files[path] = content
        self.modes[path] = mode
        self.ops.append(("write", path))
        return changed

    def exists(self, path):
        return path in self.files

    def download(self, url, dest):
        self.ops.append(("download", url, dest))
        if dest in self.files:
            return False
        self.files[dest] = "jar"
        return True

    def sql(self, statements):
        self.sql_batches.append(list(statements))

    def reload_units(self):
        self.ops.append(("daemon-reload",))

    def restart_service(self, name):
        self.ops.append(("restart", name))

    def enable_service(self, name):
        self.ops.append(("enable", name))

    def service_active(self, name):
        return self.active

    def wait_for_device(self, candidates, attempts=30, interval=2.0):
        return candidates[0] if self.devices else None


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def db_ctx():
    return BootstrapContext(
        node_id="db-node", role="database", project="t", software_version="8.0",
        db_name="appdb", db_user="app", db_password="pw",
        volume_id="vol-0abc", volume_device="/dev/sdf",
    )


@pytest.fixture
def app_ctx():
    return BootstrapContext(
        node_id="app-node", role="application", project="t", software_version="0.50.36",
        db_name="appdb", db_user="app", db_password="pw", peer_address="10.0.1.11",
        app_download_url="https://downloads.metabase.com/v0.50.36/metabase.jar",
    )


@pytest.fixture
def make_runtime():
    return FakeRuntime
