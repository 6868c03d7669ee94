import json

import pytest
from typer.testing import CliRunner

from duostack.bootstrap.context import BootstrapContext
from duostack.cli import node as node_cli
from duostack.cli.app import app
from duostack.cli.node import app as node_app

runner = CliRunner()


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    pub = tmp_path / "id.pub"
    pub.write_text("ssh-ed25519 AAAAC3Nza test@host\n")
    path = tmp_path / "stack.yaml"
    path.write_text(
        "project: demo\n"
        "provider: memory\n"
        f"state_dir: {tmp_path / 'state'}\n"
        "admin_cidr: 198.51.100.4/32\n"
        "node_agent: duostack==0.1.0\n"
        "key:\n"
        f"  public_key_path: {pub}\n"
        f"  private_key_path: {tmp_path / 'id'}\n"
        "database:\n"
        "  password: hunter2\n"
    )
    return path


def test_plan_shows_order_and_firewall(config):
    result = runner.invoke(app, ["plan", "-f", str(config)])
    assert result.exit_code == 0, result.output
    assert "1. ssh-key" in result.output
    assert "6. app-node" in result.output
    assert "db-node ingress tcp/3306 from identity:app-node" in result.output


def test_up_outputs_and_down(config):
    result = runner.invoke(app, ["up", "-f", str(config)])
    assert result.exit_code == 0, result.output
    assert "CREATED=6" in result.output
    assert "hunter2" not in result.output

    masked = runner.invoke(app, ["outputs", "-f", str(config)])
    assert masked.exit_code == 0
    assert "db_password = <sensitive>" in masked.output
    assert "app_url = http://" in masked.output

    shown = runner.invoke(app, ["outputs", "-f", str(config), "--show-sensitive"])
    assert "db_password = hunter2" in shown.output

    raw = runner.invoke(app, ["outputs", "-f", str(config), "--raw", "db_password"])
    assert raw.output.strip() == "hunter2"

    again = runner.invoke(app, ["up", "-f", str(config)])
    assert "CREATED=0" in again.output and "SKIPPED=6" in again.output

    gone = runner.invoke(app, ["down", "-f", str(config), "--yes"])
    assert gone.exit_code == 0, gone.output
    assert "DESTROYED=6" in gone.output


def test_outputs_before_up_fail(config):
    result = runner.invoke(app, ["outputs", "-f", str(config)])
    assert result.exit_code == 1


def test_public_database_rule_aborts_up(config):
    config.write_text(config.read_text() + "access_rules:\n  - {source: any, destination: db-node, port: 3306}\n")
    result = runner.invoke(app, ["up", "-f", str(config)])
    assert result.exit_code == 1
    assert "No resources were created" in result.output


def test_bad_config_exits_nonzero(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("provider: nowhere\n")
    result = runner.invoke(app, ["plan", "-f", str(path)])
    assert result.exit_code == 1


def test_status_before_up(config):
    result = runner.invoke(app, ["status", "-f", str(config)])
    assert result.exit_code == 0
    assert "[db-node] not provisioned" in result.output


def _write_context(tmp_path):
    ctx = BootstrapContext(
        node_id="db-node", role="database", project="demo", software_version="8.0",
        db_name="appdb", db_user="app", db_password="pw", state_dir=str(tmp_path / "lib"),
    )
    path = tmp_path / "context.json"
    path.write_text(json.dumps(ctx.to_dict()))
    return path


def test_node_bootstrap_reaches_running(tmp_path, monkeypatch, make_runtime):
    monkeypatch.setattr(node_cli, "SystemRuntime", lambda: make_runtime())
    log_file = tmp_path / "bootstrap.log"
    result = runner.invoke(node_app, ["bootstrap", "--context", str(_write_context(tmp_path)), "--log-file", str(log_file)])
    assert result.exit_code == 0, result.output
    assert "[db-node] Running" in result.output
    assert "state -> Running" in log_file.read_text()


def test_node_bootstrap_failure_exits_nonzero(tmp_path, monkeypatch, make_runtime):
    monkeypatch.setattr(node_cli, "SystemRuntime", lambda: make_runtime(active=False))
    log_file = tmp_path / "bootstrap.log"
    result = runner.invoke(node_app, ["bootstrap", "--context", str(_write_context(tmp_path)), "--log-file", str(log_file)])
    assert result.exit_code == 1
    assert "state -> Failed" in log_file.read_text()
