from __future__ import annotations

import time
from typing import Annotated, Any, Dict, List, Optional, Union

from fastmcp import FastMCP
from loguru import logger

from grafana_query_mcp.config import ConfigManager
from grafana_query_mcp.exceptions import GrafanaQueryError, VariableNotFoundError
from grafana_query_mcp.models import ConnectionContext
from grafana_query_mcp.request_builder import build_request, validate_request
from grafana_query_mcp.storage import JsonFileVariableStorage
from grafana_query_mcp.transport import GrafanaTransport
from grafana_query_mcp.variables import VariableStore

app = FastMCP("grafana-query-mcp")

_state: Dict[str, Any] = {}


def _runtime() -> tuple[ConfigManager, ConnectionContext, VariableStore]:
    """首次调用时加载配置、创建传输层与变量仓库，之后复用。"""
    if "store" not in _state:
        cfg = ConfigManager.load()
        gcfg = cfg.global_config.grafanaConfig
        transport = GrafanaTransport(gcfg.baseUrl, api_token=gcfg.apiToken,
                                     request_timeout=gcfg.queryTimeout, org_id=gcfg.orgId)
        store = VariableStore(transport, JsonFileVariableStorage(cfg.global_config.storage.variablesPath))
        store.load_variables()
        _state.update(cfg=cfg, ctx=cfg.connection_context(), store=store, transport=transport)
    return _state["cfg"], _state["ctx"], _state["store"]


def _time_range(start_ms: Optional[int], end_ms: Optional[int]) -> Optional[Dict[str, str]]:
    if start_ms is None or end_ms is None:
        return None
    return {"from": str(start_ms), "to": str(end_ms)}


@app.tool()
def list_variables() -> List[Dict[str, Any]]:
    """列出当前连接下的全部模板变量及其取值、选择与错误状态。"""
    _, ctx, store = _runtime()
    logger.info("调用 list_variables")
    return [v.model_dump() for v in store.list_variables(ctx)]


@app.tool()
async def add_variable(
    name: Annotated[str, "变量名，只能包含字母、数字、下划线，且不能以数字开头"],
    query: Annotated[str, "变量取值查询，可引用其他变量 ${other}；label_values(metric, label) 形式走元数据接口"],
    datasource_uid: Annotated[Optional[str], "数据源 uid；custom 类型可省略"] = None,
    regex: Annotated[str, "可选的取值过滤正则"] = "",
    multi_select: Annotated[bool, "是否多选"] = False,
    type: Annotated[str, "query 或 custom（逗号分隔的静态列表）"] = "query",
) -> Dict[str, Any]:
    """新增变量并立即解析其取值。"""
    cfg, ctx, store = _runtime()
    logger.info(f"调用 add_variable name={name} ds={datasource_uid}")
    ds_name = next((d.name for d in cfg.global_config.datasources if d.uid == datasource_uid), None)
    try:
        variable = store.add_variable(ctx, name, query, datasource_uid, ds_name,
                                      regex=regex, type=type, multi_select=multi_select)
        await store.update_variable(ctx, variable.id)
    except (ValueError, GrafanaQueryError) as e:
        return {"error": str(e)}
    return variable.model_dump()


@app.tool()
async def refresh_variable(variable_id: Annotated[int, "变量 id"]) -> Dict[str, Any]:
    """重新执行变量查询；失败时保留上一次的取值并返回错误信息。"""
    _, ctx, store = _runtime()
    logger.info(f"调用 refresh_variable id={variable_id}")
    try:
        await store.update_variable(ctx, variable_id)
    except GrafanaQueryError as e:
        return {"error": str(e)}
    variable = store.get_variable(variable_id)
    if variable is None:
        return {"error": f"Variable not found: {variable_id}"}
    return variable.model_dump()


@app.tool()
async def select_variable_value(
    variable_id: Annotated[int, "变量 id"],
    value: Annotated[Union[str, List[str], None], "单选传字符串，多选传字符串数组"],
) -> Dict[str, Any]:
    """修改变量选择，并级联刷新依赖它的变量。"""
    _, ctx, store = _runtime()
    logger.info(f"调用 select_variable_value id={variable_id} value={value}")
    try:
        updated = await store.select_variable_value(ctx, variable_id, value)
    except (ValueError, VariableNotFoundError) as e:
        return {"error": str(e)}
    return {"variable": store.get_variable(variable_id).model_dump(), "updatedDependents": updated}


@app.tool()
def substitute_query(query: Annotated[str, "包含 ${var} 占位符的查询"]) -> Dict[str, str]:
    """用当前选择替换查询中的变量占位符，未知变量保持原样。"""
    _, ctx, store = _runtime()
    return {"query": store.substitute_variables(query, ctx)}


@app.tool()
def build_query_request(
    query: Annotated[str, "PromQL 或 InfluxQL 查询，方言自动识别"],
    datasource_uid: Annotated[str, "数据源 uid"],
    start_ms: Annotated[Optional[int], "起始时间戳(毫秒)，省略则为最近一小时"] = None,
    end_ms: Annotated[Optional[int], "结束时间戳(毫秒)"] = None,
    interval: Annotated[Optional[str], "查询间隔，如 30s、5m"] = None,
) -> Dict[str, Any]:
    """替换变量后构建并校验请求描述，不执行。"""
    return _build_checked_request(query, datasource_uid, start_ms, end_ms, interval)


def _build_checked_request(query: str, datasource_uid: str, start_ms: Optional[int],
                           end_ms: Optional[int], interval: Optional[str]) -> Dict[str, Any]:
    cfg, ctx, store = _runtime()
    substituted = store.substitute_variables(query, ctx)
    try:
        request = build_request(datasource_uid, substituted, time_range=_time_range(start_ms, end_ms),
                                max_data_points=ctx.max_data_points, interval=interval,
                                interval_ms=cfg.global_config.queryDefaults.intervalMs, context=ctx)
        validate_request(request)
    except GrafanaQueryError as e:
        return {"error": str(e)}
    return request


@app.tool()
async def run_query(
    query: Annotated[str, "PromQL 或 InfluxQL 查询，可包含 ${var}"],
    datasource_uid: Annotated[str, "数据源 uid"],
    start_ms: Annotated[Optional[int], "起始时间戳(毫秒)，省略则为最近一小时"] = None,
    end_ms: Annotated[Optional[int], "结束时间戳(毫秒)"] = None,
    interval: Annotated[Optional[str], "查询间隔，如 30s、5m"] = None,
) -> Dict[str, Any]:
    """替换变量 -> 构建请求 -> 校验 -> 经 Grafana 执行，返回原始结果。"""
    logger.info(f"调用 run_query ds={datasource_uid} start={start_ms} end={end_ms}")
    if start_ms is not None and end_ms is not None and end_ms <= start_ms:
        return {"error": "end_ms must be greater than start_ms"}
    request = _build_checked_request(query, datasource_uid, start_ms, end_ms, interval)
    if "error" in request:
        return request
    try:
        data = await _state["transport"].execute(request)
    except GrafanaQueryError as e:
        return {"error": f"Query failed: {e}"}
    return {"request": request, "result": data}


@app.tool()
def current_timestamp() -> Dict[str, int]:
    """获取当前 Unix 时间戳(毫秒)"""
    ts = int(time.time() * 1000)
    logger.info(f"调用 current_timestamp now={ts}")
    return {"timestamp": ts}


def main() -> None:
    cfg, _, _ = _runtime()
    port = cfg.global_config.serverPort or 7000
    logger.info(f"启动 grafana-query-mcp 服务器 port={port}")
    app.run(transport="streamable-http", port=port)


if __name__ == "__main__":
    main()
