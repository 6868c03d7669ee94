from importlib import metadata

import pytest

from duostack.bootstrap.context import BootstrapContext
from duostack.bootstrap.roles import ApplicationRole, DatabaseRole
from duostack.bootstrap.units import ServiceUnit, render_unit
from duostack.bootstrap.userdata import pinned_agent, render_user_data
from duostack.errors import ConfigError


def test_environment_values_are_escaped_for_systemd():
    unit = ServiceUnit(
        name="metabase",
        exec_start="/usr/bin/java -jar app.jar",
        environment={"MB_DB_PASS": 'p"w%d'},
    )
    text = render_unit(unit, project="t", node_id="app-node")
    assert 'Environment="MB_DB_PASS=p\\"w%%d"' in text
    assert text.startswith("# Managed by duostack (t/app-node)")


def test_dropin_only_overrides_restart_and_limits(db_ctx):
    unit = DatabaseRole(db_ctx).unit()
    assert unit.path == "/etc/systemd/system/mysql.service.d/duostack.conf"
    text = render_unit(unit, project="t", node_id="db-node")
    assert "Restart=always" in text
    assert "LimitNOFILE=65536" in text
    assert "ExecStart" not in text


def test_latest_installs_unpinned_package(db_ctx):
    latest = BootstrapContext.from_dict({**db_ctx.to_dict(), "software_version": "latest"})
    assert DatabaseRole(latest).packages() == ["mysql-server"]
    assert DatabaseRole(db_ctx).packages() == ["mysql-server-8.0"]


def test_app_unit_runs_pinned_jar_as_service_user(app_ctx):
    unit = ApplicationRole(app_ctx).unit()
    assert unit.user == "metabase"
    assert unit.environment["MB_JETTY_PORT"] == "3000"
    assert unit.environment["MB_DB_TYPE"] == "mysql"
    assert "-Xmx1g" in unit.exec_start


def test_user_data_embeds_context_and_runs_agent(app_ctx):
    script = render_user_data(app_ctx, agent_requirement="duostack==0.1.0")
    assert script.startswith("#!/bin/bash")
    assert '"peer_address": "10.0.1.11"' in script
    assert "duostack==0.1.0" in script
    assert "duostack-node bootstrap --context /etc/duostack/context.json" in script
    assert BootstrapContext.from_dict(app_ctx.to_dict()).to_json() in script


def test_node_agent_defaults_to_the_running_release(app_ctx, monkeypatch):
    monkeypatch.setattr(metadata, "version", lambda dist: "1.2.3")
    assert pinned_agent() == "duostack==1.2.3"
    script = render_user_data(app_ctx)
    assert "pip install --quiet duostack==1.2.3" in script


def test_node_agent_pin_needs_installed_metadata(app_ctx, monkeypatch):
    def missing(dist):
        raise metadata.PackageNotFoundError(dist)

    monkeypatch.setattr(metadata, "version", missing)
    with pytest.raises(ConfigError, match="node_agent"):
        render_user_data(app_ctx)
