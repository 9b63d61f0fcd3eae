"""请求构建器：把一次与数据源无关的查询意图转换为可直接交给传输层的请求描述。

请求描述结构：
    {"from": "<ms>", "to": "<ms>", "queries": [QuerySpec, ...]}

标签方言 QuerySpec 携带 expr/range/instant/interval/intervalMs；
SQL 方言 QuerySpec 携带 query/rawQuery。
本模块无状态，所有函数都是纯函数（默认时间范围除外，取当前时间）。
"""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from grafana_query_mcp.dialect import dialect_for
from grafana_query_mcp.exceptions import LabelValuesFormatError, RequestValidationError
from grafana_query_mcp.models import LABELED, ConnectionContext
from grafana_query_mcp.utils import normalize_time_range, parse_interval, ref_id_for_index, truncate

DEFAULT_MAX_DATA_POINTS = 300
DEFAULT_QUERY_INTERVAL_MS = 15000
DEFAULT_FORMAT = "time_series"

_parse_interval = parse_interval

_LABEL_VALUES_PREFIX_RE = re.compile(r"^\s*label_values\b")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_CLOSERS = {"(": ")", "{": "}", "[": "]"}


def _datasource_ref(datasource_id: str, datasource_type: Optional[str]) -> Dict[str, str]:
    ref = {"uid": datasource_id}
    if datasource_type:
        ref["type"] = datasource_type
    return ref


def _resolve_type(datasource_id: Optional[str], datasource_type: Optional[str],
                  context: Optional[ConnectionContext]) -> Optional[str]:
    if datasource_type:
        return datasource_type
    if context is not None:
        return context.datasource_type(datasource_id)
    return None


def _build_prometheus_query(expr: str, *, ref_id: str, datasource_id: str,
                            datasource_type: Optional[str] = None,
                            max_data_points: int = DEFAULT_MAX_DATA_POINTS,
                            interval: Optional[str] = None,
                            interval_ms: Optional[int] = None,
                            format: Optional[str] = None,
                            instant: Optional[bool] = None,
                            legend_format: Optional[str] = None,
                            scoped_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    is_instant = bool(instant)
    query: Dict[str, Any] = {
        "refId": ref_id,
        "datasource": _datasource_ref(datasource_id, datasource_type),
        "expr": expr,
        "maxDataPoints": max_data_points,
        "format": format or DEFAULT_FORMAT,
        "intervalMs": interval_ms or DEFAULT_QUERY_INTERVAL_MS,
        "instant": is_instant,
        "range": not is_instant,
        "legendFormat": legend_format or "",
    }
    if interval:
        # 间隔非法时 parse_interval 回退默认值，不中断构建
        query["interval"] = interval
        query["intervalMs"] = parse_interval(interval)
    if scoped_vars:
        query["scopedVars"] = scoped_vars
    return query


def _build_influx_query(sql: str, *, ref_id: str, datasource_id: str,
                        datasource_type: Optional[str] = None,
                        max_data_points: int = DEFAULT_MAX_DATA_POINTS,
                        interval_ms: Optional[int] = None,
                        format: Optional[str] = None,
                        database: Optional[str] = None,
                        alias: Optional[str] = None,
                        scoped_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {
        "refId": ref_id,
        "datasource": _datasource_ref(datasource_id, datasource_type),
        "query": sql,
        "rawQuery": True,
        "maxDataPoints": max_data_points,
        "format": format or DEFAULT_FORMAT,
        "intervalMs": interval_ms or DEFAULT_QUERY_INTERVAL_MS,
    }
    if database:
        query["database"] = database
    if alias:
        query["alias"] = alias
    if scoped_vars:
        query["scopedVars"] = scoped_vars
    return query


def _build_query_spec(query: str, *, ref_id: str, datasource_id: str,
                      datasource_type: Optional[str],
                      max_data_points: int,
                      interval: Optional[str] = None,
                      interval_ms: Optional[int] = None,
                      format: Optional[str] = None,
                      instant: Optional[bool] = None,
                      scoped_vars: Optional[Dict[str, Any]] = None,
                      database: Optional[str] = None) -> Dict[str, Any]:
    if dialect_for(query, datasource_type) == LABELED:
        return _build_prometheus_query(
            query, ref_id=ref_id, datasource_id=datasource_id, datasource_type=datasource_type,
            max_data_points=max_data_points, interval=interval, interval_ms=interval_ms,
            format=format, instant=instant, scoped_vars=scoped_vars,
        )
    return _build_influx_query(
        query, ref_id=ref_id, datasource_id=datasource_id, datasource_type=datasource_type,
        max_data_points=max_data_points, interval_ms=interval_ms, format=format,
        database=database, scoped_vars=scoped_vars,
    )


def build_request(datasource_id: str, query: str, *,
                  datasource_type: Optional[str] = None,
                  time_range: Optional[Dict[str, Any]] = None,
                  max_data_points: int = DEFAULT_MAX_DATA_POINTS,
                  interval: Optional[str] = None,
                  interval_ms: Optional[int] = None,
                  format: str = DEFAULT_FORMAT,
                  scoped_vars: Optional[Dict[str, Any]] = None,
                  instant: Optional[bool] = None,
                  database: Optional[str] = None,
                  context: Optional[ConnectionContext] = None) -> Dict[str, Any]:
    """构建单查询请求，refId 固定为 A。未给出 datasource_type 时按查询文本判定方言。"""
    ds_type = _resolve_type(datasource_id, datasource_type, context)
    tr = normalize_time_range(time_range)
    request: Dict[str, Any] = {"from": tr["from"], "to": tr["to"], "queries": []}
    if database and ds_type == "influxdb":
        request["database"] = database
    request["queries"].append(_build_query_spec(
        query, ref_id="A", datasource_id=datasource_id, datasource_type=ds_type,
        max_data_points=max_data_points, interval=interval, interval_ms=interval_ms,
        format=format, instant=instant, scoped_vars=scoped_vars, database=database,
    ))
    logger.debug(f"构建请求 ds={datasource_id} type={ds_type} keys={sorted(request['queries'][0])} query={truncate(query)}")
    return request


def build_batch_request(queries: Iterable[Dict[str, Any]], *,
                        time_range: Optional[Dict[str, Any]] = None,
                        max_data_points: int = DEFAULT_MAX_DATA_POINTS,
                        interval: Optional[str] = None,
                        format: str = DEFAULT_FORMAT,
                        context: Optional[ConnectionContext] = None) -> Dict[str, Any]:
    """每个条目 {datasourceId, query, datasourceType?} 生成一个 QuerySpec，共享时间范围。
    refId 按条目在输入中的位置分配；缺少 datasourceId 或 query 的条目被跳过。"""
    tr = normalize_time_range(time_range)
    request: Dict[str, Any] = {"from": tr["from"], "to": tr["to"], "queries": []}
    for index, entry in enumerate(queries):
        datasource_id = entry.get("datasourceId")
        query = entry.get("query")
        if not datasource_id or not query:
            logger.debug(f"跳过无效批量条目 index={index}")
            continue
        ds_type = _resolve_type(datasource_id, entry.get("datasourceType"), context)
        request["queries"].append(_build_query_spec(
            query, ref_id=ref_id_for_index(index), datasource_id=datasource_id,
            datasource_type=ds_type, max_data_points=max_data_points,
            interval=interval, format=format,
        ))
    logger.debug(f"构建批量请求 count={len(request['queries'])}")
    return request


def _split_top_level_args(text: str) -> List[str]:
    """按顶层逗号切分参数，忽略括号与引号内的逗号。"""
    args: List[str] = []
    stack: List[str] = []
    quote: Optional[str] = None
    current = ""
    for ch in text:
        if quote:
            current += ch
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
        elif ch == "," and not stack:
            args.append(current.strip())
            current = ""
            continue
        current += ch
    args.append(current.strip())
    return args


def parse_label_values(query: str) -> Dict[str, Optional[str]]:
    """解析 label_values(metric, label) / label_values(label)。
    返回 {"metric": ..., "label": ...}，格式错误抛 LabelValuesFormatError。"""
    q = query.strip()
    m = re.match(r"^label_values\s*\((.*)\)$", q, re.DOTALL)
    if not m:
        raise LabelValuesFormatError(f"Invalid label_values query format: {query!r}")
    args = _split_top_level_args(m.group(1))
    if len(args) == 1:
        metric, label = None, args[0]
    elif len(args) == 2:
        metric, label = args
    else:
        raise LabelValuesFormatError(
            f"Invalid label_values query format: expected 1 or 2 arguments, got {len(args)}"
        )
    if not _LABEL_NAME_RE.match(label or ""):
        raise LabelValuesFormatError(f"Invalid label_values query format: bad label name {label!r}")
    if metric is not None and not metric:
        raise LabelValuesFormatError("Invalid label_values query format: empty metric selector")
    return {"metric": metric, "label": label}


def _build_label_values_request(query: str, datasource_id: str) -> Dict[str, Any]:
    parsed = parse_label_values(query)
    metric, label = parsed["metric"], parsed["label"]
    base = f"/api/datasources/proxy/uid/{datasource_id}/api/v1"
    if metric:
        # 带指标的形式走 series 接口，再从每条 series 中提取目标标签
        lookup = {"url": f"{base}/series", "params": {"match[]": metric}, "extractLabel": label}
    else:
        lookup = {"url": f"{base}/label/{label}/values", "params": {}, "extractLabel": label}
    logger.debug(f"构建 label_values 请求 url={lookup['url']} label={label}")
    return lookup


def is_label_lookup(request: Dict[str, Any]) -> bool:
    return "url" in request and "queries" not in request


def build_variable_request(datasource_id: str, query: str, *,
                           datasource_type: Optional[str] = None,
                           time_range: Optional[Dict[str, Any]] = None,
                           max_data_points: int = DEFAULT_MAX_DATA_POINTS,
                           context: Optional[ConnectionContext] = None) -> Dict[str, Any]:
    """变量取值请求。标签方言强制 instant + time_series；
    label_values(...) 生成标签查询描述（指向元数据接口），不生成 QuerySpec。"""
    ds_type = _resolve_type(datasource_id, datasource_type, context)
    is_label_values = _LABEL_VALUES_PREFIX_RE.match(query or "") is not None
    if is_label_values and (not ds_type or dialect_for(query, ds_type) == LABELED):
        return _build_label_values_request(query, datasource_id)
    if dialect_for(query, ds_type) == LABELED:
        return build_request(
            datasource_id, query, datasource_type=ds_type, time_range=time_range,
            max_data_points=max_data_points, format="time_series", instant=True,
        )
    return build_request(
        datasource_id, query, datasource_type=ds_type, time_range=time_range,
        max_data_points=max_data_points,
    )


def build_panel_request(panel: Dict[str, Any], datasource_id: str, *,
                        time_range: Optional[Dict[str, Any]] = None,
                        max_data_points: Optional[int] = None) -> Dict[str, Any]:
    """按面板 targets 构建请求。隐藏或无表达式的 target 被跳过；
    方言由 target 上 expr / query 的存在决定，不重新判定。"""
    tr = normalize_time_range(time_range)
    mdp = max_data_points or panel.get("maxDataPoints") or DEFAULT_MAX_DATA_POINTS
    request: Dict[str, Any] = {"from": tr["from"], "to": tr["to"], "queries": []}
    targets = panel.get("targets")
    if not isinstance(targets, list):
        return request
    for index, target in enumerate(targets):
        if target.get("hide"):
            continue
        expr = target.get("expr")
        sql = target.get("query") or target.get("rawSql")
        if not expr and not sql:
            continue
        ref_id = target.get("refId") or ref_id_for_index(index)
        target_ds = target.get("datasource")
        target_ds_id = (target_ds.get("uid") if isinstance(target_ds, dict) else target_ds) or datasource_id
        if expr:
            request["queries"].append(_build_prometheus_query(
                expr, ref_id=ref_id, datasource_id=target_ds_id, max_data_points=mdp,
                interval=target.get("interval"), legend_format=target.get("legendFormat"),
                instant=target.get("instant"),
            ))
        else:
            request["queries"].append(_build_influx_query(
                sql, ref_id=ref_id, datasource_id=target_ds_id, max_data_points=mdp,
                alias=target.get("alias"), format=target.get("resultFormat"),
            ))
        if isinstance(target_ds, dict) and target_ds.get("uid"):
            # 保留 target 自带的数据源描述（含 type）
            request["queries"][-1]["datasource"] = dict(target_ds)
    logger.debug(f"构建面板请求 panel={panel.get('title', panel.get('id'))} queries={len(request['queries'])}")
    return request


def merge_time_ranges(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not a:
        return b
    if not b:
        return a
    return {
        "from": str(min(int(a["from"]), int(b["from"]))),
        "to": str(max(int(a["to"]), int(b["to"]))),
    }


def validate_request(request: Optional[Dict[str, Any]]) -> bool:
    """快速失败：先校验请求级字段，再按顺序逐个校验 QuerySpec，报告第一个问题。"""
    if not request:
        raise RequestValidationError("Request is required")
    if not request.get("from") or not request.get("to"):
        raise RequestValidationError("Time range (from/to) is required")
    try:
        ordered = int(request["from"]) < int(request["to"])
    except (TypeError, ValueError):
        ordered = True
    if not ordered:
        raise RequestValidationError("Time range 'from' must be earlier than 'to'")
    queries = request.get("queries")
    if not queries or not isinstance(queries, list):
        raise RequestValidationError("At least one query is required")
    seen = set()
    for index, query in enumerate(queries):
        if not isinstance(query, dict):
            raise RequestValidationError(f"Query {index} is invalid")
        ref_id = query.get("refId")
        if not ref_id:
            raise RequestValidationError(f"Query {index} is missing refId")
        if ref_id in seen:
            raise RequestValidationError(f"Query {index} has duplicate refId {ref_id!r}")
        seen.add(ref_id)
        datasource = query.get("datasource")
        if not isinstance(datasource, dict) or not datasource.get("uid"):
            raise RequestValidationError(f"Query {index} is missing datasource")
        if not query.get("expr") and not query.get("query"):
            raise RequestValidationError(f"Query {index} is missing expression")
    return True
