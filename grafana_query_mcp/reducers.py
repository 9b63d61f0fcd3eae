"""后端返回结构 -> 扁平字符串列表。

每个后端一个适配器，返回结构视为外部契约，解析逻辑只放在这里。
支持的结构：
- Grafana /api/ds/query: {"results": {"A": {"frames": [...]}}}
- Prometheus 原生: {"status": "success", "data": [...] | {"resultType", "result"}}
- InfluxQL 原生: {"results": [{"series": [{"columns", "values"}]}]}
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from grafana_query_mcp.exceptions import ResultShapeError
from grafana_query_mcp.models import LABELED, SQL_LIKE, Dialect


def _stringify(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _grafana_frames(raw: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    results = raw.get("results")
    if not isinstance(results, dict):
        return None
    frames: List[Dict[str, Any]] = []
    for ref_id, result in results.items():
        if not isinstance(result, dict):
            continue
        if result.get("error"):
            raise ResultShapeError(f"Query {ref_id} failed: {result['error']}")
        frames.extend(result.get("frames") or [])
    return frames


def _frame_columns(frame: Dict[str, Any]) -> List[tuple]:
    """返回 [(field, column_values)]，跳过 time 列。"""
    fields = (frame.get("schema") or {}).get("fields") or []
    columns = (frame.get("data") or {}).get("values") or []
    out = []
    for index, column in enumerate(columns):
        field = fields[index] if index < len(fields) else {}
        if field.get("type") == "time":
            continue
        out.append((field, column or []))
    return out


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


class ResultReducer:
    dialect: Dialect

    def reduce(self, raw: Any, extract_label: Optional[str] = None) -> List[str]:
        raise NotImplementedError


class PrometheusResultReducer(ResultReducer):
    """标签方言：提取某个标签的去重取值（按首次出现顺序）。"""
    dialect = LABELED

    def reduce(self, raw: Any, extract_label: Optional[str] = None) -> List[str]:
        if isinstance(raw, list):
            raw = {"status": "success", "data": raw}
        if not isinstance(raw, dict):
            raise ResultShapeError(f"Unexpected Prometheus response type: {type(raw).__name__}")
        frames = _grafana_frames(raw)
        if frames is not None:
            return self._from_frames(frames, extract_label)
        if raw.get("status") not in (None, "success"):
            raise ResultShapeError(f"Prometheus error: {raw.get('error') or raw.get('status')}")
        data = raw.get("data")
        if isinstance(data, list):
            return self._from_list(data, extract_label)
        if isinstance(data, dict) and "result" in data:
            return self._from_vector(data.get("result") or [], extract_label)
        raise ResultShapeError("Unrecognized Prometheus response shape")

    @staticmethod
    def _from_list(data: List[Any], extract_label: Optional[str]) -> List[str]:
        values = []
        for item in data:
            if isinstance(item, dict):
                # series 接口：每项是一组标签
                if extract_label and item.get(extract_label) is not None:
                    values.append(_stringify(item[extract_label]))
            elif item is not None:
                values.append(_stringify(item))
        return _dedupe(values)

    @staticmethod
    def _from_vector(result: List[Dict[str, Any]], extract_label: Optional[str]) -> List[str]:
        values = []
        for item in result:
            metric = item.get("metric") or {}
            if extract_label:
                if metric.get(extract_label) is not None:
                    values.append(_stringify(metric[extract_label]))
                continue
            sample = item.get("value")
            if isinstance(sample, list) and len(sample) >= 2:
                values.append(_stringify(sample[1]))
        return _dedupe(values)

    @staticmethod
    def _from_frames(frames: List[Dict[str, Any]], extract_label: Optional[str]) -> List[str]:
        values = []
        for frame in frames:
            columns = _frame_columns(frame)
            if extract_label:
                for field, _ in columns:
                    label_value = (field.get("labels") or {}).get(extract_label)
                    if label_value is not None:
                        values.append(_stringify(label_value))
                continue
            if columns:
                values.extend(_stringify(v) for v in columns[0][1] if v is not None)
        return _dedupe(values)


class InfluxResultReducer(ResultReducer):
    """SQL 方言：展开各行的取值列；key/value 两列结构只取 value 列。保持顺序，不去重。"""
    dialect = SQL_LIKE

    def reduce(self, raw: Any, extract_label: Optional[str] = None) -> List[str]:
        if not isinstance(raw, dict):
            raise ResultShapeError(f"Unexpected InfluxDB response type: {type(raw).__name__}")
        if raw.get("error"):
            raise ResultShapeError(f"InfluxDB error: {raw['error']}")
        frames = _grafana_frames(raw)
        if frames is not None:
            values: List[str] = []
            for frame in frames:
                columns = _frame_columns(frame)
                names = [field.get("name") for field, _ in columns]
                rows = list(zip(*[col for _, col in columns])) if columns else []
                values.extend(self._flatten(names, rows))
            return values
        results = raw.get("results")
        if isinstance(results, list):
            return self._from_native(results)
        raise ResultShapeError("Unrecognized InfluxDB response shape")

    def _from_native(self, results: List[Dict[str, Any]]) -> List[str]:
        values: List[str] = []
        for statement in results:
            if statement.get("error"):
                raise ResultShapeError(f"InfluxDB error: {statement['error']}")
            for series in statement.get("series") or []:
                names = list(series.get("columns") or [])
                rows = series.get("values") or []
                if names and names[0] == "time":
                    names = names[1:]
                    rows = [row[1:] for row in rows]
                values.extend(self._flatten(names, rows))
        return values

    @staticmethod
    def _flatten(names: List[Optional[str]], rows: Iterable[Iterable[Any]]) -> List[str]:
        value_index = None
        if len(names) == 2 and [str(n).lower() for n in names] == ["key", "value"]:
            value_index = 1
        out = []
        for row in rows:
            row = list(row)
            cells = [row[value_index]] if value_index is not None else row
            out.extend(_stringify(c) for c in cells if c is not None)
        return out


_REDUCERS: Dict[str, ResultReducer] = {
    LABELED: PrometheusResultReducer(),
    SQL_LIKE: InfluxResultReducer(),
}


def reducer_for(dialect: Dialect) -> ResultReducer:
    return _REDUCERS[dialect]


def register_reducer(reducer: ResultReducer) -> None:
    logger.debug(f"注册结果适配器 dialect={reducer.dialect} cls={type(reducer).__name__}")
    _REDUCERS[reducer.dialect] = reducer
