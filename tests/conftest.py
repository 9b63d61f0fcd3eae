"""
Pytest configuration for grafana-query-mcp tests.
"""
import inspect

import pytest

from grafana_query_mcp.models import ConnectionContext
from grafana_query_mcp.storage import InMemoryVariableStorage
from grafana_query_mcp.variables import VariableStore


class FakeTransport:
    """In-process transport: the handler returns a raw result, an exception
    instance to raise, or an awaitable producing either."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda request: {"results": {"A": {"frames": []}}})
        self.requests = []

    async def execute(self, request):
        self.requests.append(request)
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result


def _frame(values, name="value"):
    return {
        "schema": {"fields": [{"name": "time", "type": "time"}, {"name": name, "type": "string"}]},
        "data": {"values": [[1609459200000 + i for i in range(len(values))], list(values)]},
    }


@pytest.fixture
def frames_response():
    """Build a Grafana /api/ds/query response with one frame per value list."""
    def build(*value_lists, name="value"):
        return {"results": {"A": {"frames": [_frame(vs, name=name) for vs in value_lists]}}}
    return build


@pytest.fixture
def ctx():
    return ConnectionContext(
        connection_id="conn-1",
        datasources={"prom-uid": "prometheus", "influx-uid": "influxdb"},
        time_range={"from": "1609459200000", "to": "1609545600000"},
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def storage():
    return InMemoryVariableStorage()


@pytest.fixture
def store(transport, storage):
    return VariableStore(transport, storage)
