import json

import pytest

from grafana_query_mcp.config import ConfigManager
from grafana_query_mcp.exceptions import ConfigurationError


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_load_minimal_config(tmp_path):
    cfg = ConfigManager.load(_write(tmp_path, {"grafanaConfig": {"baseUrl": "http://grafana:3000/"}}))
    assert cfg.base_url == "http://grafana:3000/"
    assert cfg.connection_id == "http://grafana:3000"
    assert cfg.global_config.serverPort == 7000
    assert cfg.global_config.queryDefaults.maxDataPoints == 300
    assert cfg.global_config.storage.variablesPath == "variables.json"


def test_connection_context(tmp_path):
    cfg = ConfigManager.load(_write(tmp_path, {
        "grafanaConfig": {"baseUrl": "http://grafana:3000", "apiToken": "t", "queryTimeout": "10s"},
        "connectionId": "prod",
        "datasources": [
            {"uid": "prom-uid", "name": "Prometheus", "type": "prometheus"},
            {"uid": "influx-uid", "type": "influxdb"},
        ],
        "queryDefaults": {"variableLookback": "6h", "interval": "30s", "maxDataPoints": 500},
    }))
    ctx = cfg.connection_context()
    assert ctx.connection_id == "prod"
    assert ctx.datasources == {"prom-uid": "prometheus", "influx-uid": "influxdb"}
    assert ctx.lookback_ms == 6 * 3600 * 1000
    assert ctx.interval == "30s"
    assert ctx.max_data_points == 500
    assert ctx.datasource_type("influx-uid") == "influxdb"
    assert ctx.datasource_type("missing") is None


def test_load_from_env(tmp_path, monkeypatch):
    path = _write(tmp_path, {"grafanaConfig": {"baseUrl": "http://env-grafana"}})
    monkeypatch.setenv("GRAFANA_QUERY_CONFIG_PATH", path)
    assert ConfigManager.load().base_url == "http://env-grafana"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read config file"):
        ConfigManager.load(str(tmp_path / "absent.json"))


def test_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        ConfigManager.load(str(path))


def test_schema_violation(tmp_path):
    with pytest.raises(ConfigurationError, match="Invalid config.json"):
        ConfigManager.load(_write(tmp_path, {"datasources": []}))
