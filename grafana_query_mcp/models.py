from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Dialect = Literal["labeled", "sql-like"]

LABELED: Dialect = "labeled"
SQL_LIKE: Dialect = "sql-like"

# Grafana 数据源类型 -> 查询方言
DATASOURCE_DIALECTS: Dict[str, Dialect] = {
    "prometheus": LABELED,
    "influxdb": SQL_LIKE,
}

VARIABLE_TYPE_QUERY = "query"
VARIABLE_TYPE_CUSTOM = "custom"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Variable(BaseModel):
    """模板变量。
    - 定义字段：id/name/query/datasourceId/type/multiSelect/regex
    - 解析状态：values/selectedValue/selectedValues/loading/error
    - dependsOn 由 query 文本扫描得出，只在新增/编辑时重算
    """
    id: int
    name: str
    query: str
    datasourceId: Optional[str] = None
    datasourceName: Optional[str] = None
    connectionId: Optional[str] = None
    type: Literal["query", "custom"] = VARIABLE_TYPE_QUERY
    regex: str = ""
    multiSelect: bool = False
    values: List[str] = Field(default_factory=list)
    selectedValue: Optional[str] = None
    selectedValues: List[str] = Field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None
    dependsOn: List[str] = Field(default_factory=list)
    lastUpdated: Optional[str] = None

    @property
    def state(self) -> str:
        if self.loading:
            return "loading"
        if self.error:
            return "errored"
        if self.lastUpdated:
            return "resolved"
        return "idle"


@dataclass
class ConnectionContext:
    """当前连接的显式上下文，替代全局的 "当前连接/数据源" 状态。"""
    connection_id: str
    # datasource uid -> datasource type（prometheus / influxdb / ...）
    datasources: Dict[str, str] = field(default_factory=dict)
    time_range: Optional[Dict[str, Any]] = None
    interval: str = "1m"
    lookback_ms: int = 24 * 60 * 60 * 1000
    max_data_points: int = 300

    def datasource_type(self, uid: Optional[str]) -> Optional[str]:
        if not uid:
            return None
        return self.datasources.get(uid)
