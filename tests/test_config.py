import json

import pytest

from clawrelay.config import DEFAULT_MODELS, DEFAULT_PORT, ConfigError, RelayConfig, load_config


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_defaults():
    cfg = RelayConfig.from_dict({})
    assert cfg.port == DEFAULT_PORT
    assert cfg.password is None
    assert not cfg.auth_required
    assert cfg.gateways == []
    assert cfg.models == DEFAULT_MODELS


def test_full_config(tmp_path):
    path = _write(tmp_path, {
        "port": 9000,
        "password": "  pw  ",
        "log_level": "debug",
        "gateways": [
            {"name": "home", "url": "ws://home:18789", "token": "t1"},
            {"url": "wss://remote/ws", "agentId": "ops"},
        ],
        "models": [{"value": "x"}],
    })
    cfg = load_config(path, environ={})
    assert cfg.port == 9000
    assert cfg.password == "pw"
    assert cfg.auth_required
    assert cfg.log_level == "DEBUG"
    assert [g.name for g in cfg.gateways] == ["home", "gateway-1"]
    assert cfg.gateways[0].token == "t1"
    assert cfg.gateways[1].agent_id == "ops"
    assert cfg.models == [{"value": "x", "label": "x"}]


def test_blank_password_means_open(tmp_path):
    cfg = load_config(_write(tmp_path, {"password": "   "}), environ={})
    assert not cfg.auth_required


def test_env_overrides(tmp_path):
    path = _write(tmp_path, {"port": 9000, "password": "pw"})
    cfg = load_config(path, environ={
        "CLAWRELAY_PORT": "9100",
        "CLAWRELAY_PASSWORD": "",
        "CLAWRELAY_LOG_LEVEL": "warning",
        "CLAWRELAY_IDENTITY": "/var/lib/clawrelay/device.json",
    })
    assert cfg.port == 9100
    assert cfg.password is None
    assert cfg.log_level == "WARNING"
    assert cfg.identity_path == "/var/lib/clawrelay/device.json"


def test_config_path_from_env(tmp_path):
    path = _write(tmp_path, {"port": 9200})
    assert load_config(environ={"CLAWRELAY_CONFIG": path}).port == 9200


@pytest.mark.parametrize("data", [
    [],
    {"port": "abc"},
    {"log_level": "LOUD"},
    {"gateways": {"url": "ws://a"}},
    {"gateways": [{"name": "no-url"}]},
    {"gateways": ["ws://a"]},
])
def test_invalid_config(data):
    with pytest.raises(ConfigError):
        RelayConfig.from_dict(data)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.json"), environ={})


def test_bad_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{")
    with pytest.raises(ConfigError):
        load_config(str(path), environ={})


def test_bad_env_port(tmp_path):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, {}), environ={"CLAWRELAY_PORT": "eighty"})
