import warnings

import pytest

from duostack.config.loader import load_config
from duostack.config.models import StackConfig
from duostack.errors import ConfigError


def test_defaults_without_a_file():
    cfg = load_config(None)
    assert cfg.project == "duostack"
    assert cfg.database.port == 3306
    assert cfg.readiness.interval_seconds == 10
    assert cfg.readiness.max_attempts == 30
    assert cfg.admin_cidr == "127.0.0.1/32"
    assert cfg.state_path().name == "duostack.json"


def test_loads_yaml_with_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("DUOSTACK_TEST_PW", "from-env")
    path = tmp_path / "stack.yaml"
    path.write_text(
        "project: demo\n"
        "provider: memory\n"
        "database:\n"
        "  password: ${DUOSTACK_TEST_PW}\n"
        "  version: '8.0'\n"
        "access_rules:\n"
        "  - {source: any, destination: app-node, port: 443}\n"
    )
    cfg = load_config(path)
    assert cfg.project == "demo"
    assert cfg.provider == "memory"
    assert cfg.database.password.get_secret_value() == "from-env"
    assert cfg.access_rules[0].port == 443
    assert "from-env" not in repr(cfg)


@pytest.mark.parametrize("body", [
    "project: 'bad name!'\n",
    "provider: gcp\n",
    "readiness: {max_attempts: 0}\n",
    "access_rules: [{source: any, destination: elsewhere, port: 80}]\n",
    "database: [not, a, mapping]\n",
])
def test_invalid_values_raise_config_error(tmp_path, body):
    path = tmp_path / "bad.yaml"
    path.write_text(body)
    with pytest.raises(ConfigError):
        load_config(path)


def test_unreadable_and_malformed_files(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")
    path = tmp_path / "broken.yaml"
    path.write_text("project: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_latest_version_warns_but_is_accepted():
    with pytest.warns(UserWarning, match="not reproducible"):
        cfg = StackConfig.model_validate({"database": {"version": "latest"}})
    assert cfg.database.version == "latest"


def test_pinned_versions_do_not_warn():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        StackConfig.model_validate({"database": {"version": "8.0"}, "application": {"version": "0.50.36"}})


def test_common_tags_include_project():
    cfg = StackConfig(project="demo", tags={"owner": "ops"})
    assert {"Key": "Project", "Value": "demo"} in cfg.common_tags()
    assert {"Key": "owner", "Value": "ops"} in cfg.common_tags()
