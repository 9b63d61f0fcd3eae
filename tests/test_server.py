import pytest

from grafana_query_mcp import server
from grafana_query_mcp.config import ConfigManager, DatasourceConfig, GlobalConfig, GrafanaConfig
from grafana_query_mcp.exceptions import TransportError
from grafana_query_mcp.storage import InMemoryVariableStorage
from grafana_query_mcp.variables import VariableStore
from tests.conftest import FakeTransport


def _fn(tool):
    # @app.tool() 在新版 fastmcp 中返回 Tool 对象，原函数挂在 fn 上
    return getattr(tool, "fn", tool)


@pytest.fixture
def runtime(monkeypatch, ctx, frames_response):
    cfg = ConfigManager(global_config=GlobalConfig(
        grafanaConfig=GrafanaConfig(baseUrl="http://grafana.local"),
        datasources=[DatasourceConfig(uid="prom-uid", name="Prometheus", type="prometheus")],
    ))
    transport = FakeTransport(lambda request: frames_response(["1"]))
    store = VariableStore(transport, InMemoryVariableStorage())
    monkeypatch.setattr(server, "_state", {"cfg": cfg, "ctx": ctx, "store": store, "transport": transport})
    return store, transport


@pytest.mark.asyncio
async def test_add_and_list_variables(runtime):
    store, _ = runtime
    result = await _fn(server.add_variable)("env", "prod,staging", type="custom")
    assert result["values"] == ["prod", "staging"]
    assert result["selectedValue"] == "prod"
    listed = _fn(server.list_variables)()
    assert [v["name"] for v in listed] == ["env"]


@pytest.mark.asyncio
async def test_add_variable_records_datasource_name(runtime):
    result = await _fn(server.add_variable)("job", 'up{job="node"}', "prom-uid")
    assert result["datasourceName"] == "Prometheus"
    assert result["values"] == ["1"]


@pytest.mark.asyncio
async def test_add_variable_invalid_name(runtime):
    result = await _fn(server.add_variable)("1bad", "a,b", type="custom")
    assert "Variable name must start" in result["error"]


@pytest.mark.asyncio
async def test_refresh_variable_bad_label_values(runtime, ctx):
    store, transport = runtime
    variable = store.add_variable(ctx, "inst", "label_values(up, instance, extra)", "prom-uid")
    result = await _fn(server.refresh_variable)(variable.id)
    assert "Invalid label_values query format" in result["error"]
    assert transport.requests == []


@pytest.mark.asyncio
async def test_refresh_unknown_variable(runtime):
    result = await _fn(server.refresh_variable)(99)
    assert result == {"error": "Variable not found: 99"}


@pytest.mark.asyncio
async def test_select_variable_value(runtime, ctx):
    store, _ = runtime
    region = store.add_variable(ctx, "region", "eu,us", type="custom")
    zone = store.add_variable(ctx, "zone", "${region}-a,${region}-b", type="custom")
    await store.refresh_all(ctx)

    result = await _fn(server.select_variable_value)(region.id, "us")
    assert result["variable"]["selectedValue"] == "us"
    assert result["updatedDependents"] == [zone.id]
    assert zone.values == ["us-a", "us-b"]

    result = await _fn(server.select_variable_value)(region.id, "mars")
    assert "not options" in result["error"]
    result = await _fn(server.select_variable_value)(99, "us")
    assert result["error"] == "Variable not found: 99"


def test_substitute_query(runtime, ctx):
    store, _ = runtime
    v = store.add_variable(ctx, "job", "node", type="custom")
    v.values, v.selectedValue = ["node"], "node"
    assert _fn(server.substitute_query)('up{job="${job}"}') == {"query": 'up{job="node"}'}


def test_build_query_request(runtime, ctx):
    store, _ = runtime
    v = store.add_variable(ctx, "job", "node", type="custom")
    v.values, v.selectedValue = ["node"], "node"
    request = _fn(server.build_query_request)('rate(up{job="${job}"}[5m])', "prom-uid", 1000, 2000, "30s")
    assert request["from"] == "1000" and request["to"] == "2000"
    spec = request["queries"][0]
    assert spec["expr"] == 'rate(up{job="node"}[5m])'
    assert spec["datasource"] == {"uid": "prom-uid", "type": "prometheus"}
    assert spec["intervalMs"] == 30_000


def test_build_query_request_validation_error(runtime):
    result = _fn(server.build_query_request)("up", "prom-uid", 2000, 1000)
    assert result == {"error": "Time range 'from' must be earlier than 'to'"}


@pytest.mark.asyncio
async def test_run_query_pipeline(runtime, ctx):
    store, transport = runtime
    v = store.add_variable(ctx, "job", "api", type="custom")
    v.values, v.selectedValue = ["api"], "api"
    result = await _fn(server.run_query)('up{job="$job"}', "prom-uid", 1000, 2000)
    assert result["request"]["queries"][0]["expr"] == 'up{job="api"}'
    assert result["result"]["results"]["A"]["frames"]
    assert transport.requests[-1] is result["request"]


@pytest.mark.asyncio
async def test_run_query_rejects_inverted_range(runtime):
    _, transport = runtime
    result = await _fn(server.run_query)("up", "prom-uid", 2000, 2000)
    assert "error" in result
    assert transport.requests == []


@pytest.mark.asyncio
async def test_run_query_validation_error(runtime):
    _, transport = runtime
    result = await _fn(server.run_query)("", "prom-uid", 1000, 2000)
    assert result == {"error": "Query 0 is missing expression"}
    assert transport.requests == []


@pytest.mark.asyncio
async def test_run_query_transport_error(runtime):
    _, transport = runtime
    transport.handler = lambda request: TransportError(502, "bad gateway")
    result = await _fn(server.run_query)("up", "prom-uid", 1000, 2000)
    assert result == {"error": "Query failed: 502 bad gateway"}


def test_current_timestamp(runtime):
    ts = _fn(server.current_timestamp)()["timestamp"]
    assert isinstance(ts, int) and ts > 1_600_000_000_000
