from __future__ import annotations

import re
from typing import Any, Optional

from grafana_query_mcp.models import DATASOURCE_DIALECTS, LABELED, SQL_LIKE, Dialect

# 标签时序方言中可作为查询开头的函数
LABELED_FUNCTIONS = (
    "sum", "avg", "max", "min", "count", "count_values", "group",
    "stddev", "stdvar", "topk", "bottomk", "quantile",
    "rate", "irate", "increase", "delta", "idelta", "deriv", "changes", "resets",
    "histogram_quantile", "predict_linear", "absent", "absent_over_time",
    "avg_over_time", "sum_over_time", "min_over_time", "max_over_time",
    "count_over_time", "quantile_over_time", "last_over_time",
    "label_replace", "label_join", "label_values",
    "clamp_min", "clamp_max", "sort", "sort_desc",
)

_FUNCTION_CALL_RE = re.compile(
    r"^\s*(?:" + "|".join(LABELED_FUNCTIONS) + r")\s*\(", re.IGNORECASE
)
_SELECTOR_RE = re.compile(r"^\s*[a-zA-Z_:][a-zA-Z0-9_:]*\s*[\{\[]")
_BY_CLAUSE_RE = re.compile(r"(\w*)\s+by\s*\(", re.IGNORECASE)
_WITHOUT_CLAUSE_RE = re.compile(r"\swithout\s*\(", re.IGNORECASE)
_OFFSET_RE = re.compile(r"\soffset\s+\d+(?:ms|[smhdwy])\b", re.IGNORECASE)
_SQL_KEYWORD_RE = re.compile(r"\b(?:select|show|from)\b", re.IGNORECASE)
_BARE_METRIC_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")


def _has_aggregation_by(q: str) -> bool:
    # "GROUP BY (...)" 属于 SQL，不算聚合子句
    return any(m.group(1).lower() != "group" for m in _BY_CLAUSE_RE.finditer(q))


def classify(raw_query: Any) -> Dialect:
    """判定原始查询字符串属于哪种方言，纯函数，永不抛异常。
    顺序：函数调用 > 选择器/聚合子句 > SQL 关键字 > 裸指标名。"""
    if not isinstance(raw_query, str) or not raw_query.strip():
        return SQL_LIKE
    q = raw_query.strip()
    if _FUNCTION_CALL_RE.match(q):
        return LABELED
    if _SELECTOR_RE.match(q) or _has_aggregation_by(q) or _WITHOUT_CLAUSE_RE.search(q) or _OFFSET_RE.search(q):
        return LABELED
    if _SQL_KEYWORD_RE.search(q):
        return SQL_LIKE
    if _BARE_METRIC_RE.match(q):
        return LABELED
    return SQL_LIKE


def dialect_for(query: Any, datasource_type: Optional[str] = None) -> Dialect:
    """显式的数据源类型优先，未知类型才退回到 classify。"""
    if datasource_type:
        known = DATASOURCE_DIALECTS.get(datasource_type.lower())
        if known:
            return known
    return classify(query)
