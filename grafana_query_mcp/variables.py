from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence, Union

from loguru import logger

from grafana_query_mcp.dependencies import extract_dependencies, plan_cascade, resolution_order
from grafana_query_mcp.exceptions import (
    GrafanaQueryError,
    LabelValuesFormatError,
    RequestValidationError,
    VariableNotFoundError,
)
from grafana_query_mcp.models import (
    LABELED,
    SQL_LIKE,
    VARIABLE_TYPE_CUSTOM,
    VARIABLE_TYPE_QUERY,
    ConnectionContext,
    Variable,
    utc_now_iso,
)
from grafana_query_mcp.reducers import reducer_for
from grafana_query_mcp.request_builder import build_variable_request, is_label_lookup, validate_request
from grafana_query_mcp.storage import InMemoryVariableStorage, VariableStorage
from grafana_query_mcp.substitution import substitute
from grafana_query_mcp.transport import Transport
from grafana_query_mcp.utils import default_time_range, truncate

VARIABLE_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
DATASOURCE_MISSING = "Datasource not found or not connected"

_SLASH_REGEX_RE = re.compile(r"^/(?P<body>.*)/(?P<flags>[a-z]*)$", re.DOTALL)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}

# 构建阶段错误：直接抛给调用方，不当作后端失败吞掉
_BUILD_ERRORS = (LabelValuesFormatError, RequestValidationError)


def _compile_filter(pattern: str) -> re.Pattern:
    # 兼容 /pattern/flags 写法
    m = _SLASH_REGEX_RE.match(pattern)
    if not m:
        return re.compile(pattern)
    flags = 0
    for ch in m.group("flags"):
        flags |= _REGEX_FLAGS.get(ch, 0)
    return re.compile(m.group("body"), flags)


def apply_regex_filter(values: Sequence[str], pattern: Optional[str]) -> List[str]:
    """只保留匹配 pattern 的值，保持原顺序。非法正则不抛异常，返回未过滤的列表。"""
    if not pattern:
        return list(values)
    try:
        rx = _compile_filter(pattern)
    except re.error as e:
        logger.warning(f"正则非法，跳过过滤 pattern={pattern!r} err={e}")
        return list(values)
    return [v for v in values if rx.search(v)]


def _captured(m: re.Match) -> Optional[str]:
    named = m.groupdict()
    if named:
        for key in ("value", "val", "text", "display"):
            if named.get(key):
                return named[key]
        first = next(iter(named.values()))
        if first:
            return first
    elif m.re.groups and m.group(1):
        return m.group(1)
    return m.group(0) or None


def extract_regex_values(values: Sequence[str], pattern: Optional[str]) -> List[str]:
    """按 Grafana 变量正则的约定提取取值：命名分组 value（其次 text），
    否则第一个捕获分组，否则整个匹配。不匹配的值被丢弃，结果按首次出现去重。
    非法正则不抛异常，返回未处理的列表。"""
    if not pattern:
        return list(values)
    try:
        rx = _compile_filter(pattern)
    except re.error as e:
        logger.warning(f"正则非法，跳过提取 pattern={pattern!r} err={e}")
        return list(values)
    out: List[str] = []
    for v in values:
        m = rx.search(v)
        captured = _captured(m) if m else None
        if captured and captured not in out:
            out.append(captured)
    return out


class VariableStore:
    """模板变量的有序集合及其解析状态。

    所有修改操作都在单线程事件循环里串行执行；一次解析结果在一个同步代码块内
    整体写回（values/error/loading 一起更新），读者不会看到半更新的变量。
    同一变量的并发 update_variable 用单调递增的请求序号防止旧结果覆盖新结果。
    """

    def __init__(self, transport: Transport, storage: Optional[VariableStorage] = None):
        self.transport = transport
        self.storage = storage if storage is not None else InMemoryVariableStorage()
        self.variables: List[Variable] = []
        self._next_id = 1
        self._request_seq: Dict[int, int] = {}

    # ---- 持久化 ----

    def _persist(self) -> None:
        try:
            self.storage.save_variables(self.variables)
        except OSError as e:
            logger.error(f"保存变量失败: {e}")

    def load_variables(self) -> List[Variable]:
        self.variables = self.storage.load_variables()
        for v in self.variables:
            v.loading = False
            v.dependsOn = extract_dependencies(v.query)
        self._next_id = max((v.id for v in self.variables), default=0) + 1
        self._request_seq.clear()
        logger.info(f"加载变量 count={len(self.variables)} next_id={self._next_id}")
        return self.variables

    # ---- 查询 ----

    def get_variable(self, variable_id: int) -> Optional[Variable]:
        return next((v for v in self.variables if v.id == variable_id), None)

    def _require(self, variable_id: int) -> Variable:
        variable = self.get_variable(variable_id)
        if variable is None:
            raise VariableNotFoundError(variable_id)
        return variable

    def list_variables(self, context: Optional[ConnectionContext] = None) -> List[Variable]:
        if context is None:
            return list(self.variables)
        return [v for v in self.variables if v.connectionId == context.connection_id]

    def _check_name(self, context: ConnectionContext, name: str, exclude_id: Optional[int] = None) -> None:
        if not VARIABLE_NAME_RE.match(name):
            raise ValueError(
                "Variable name must start with a letter or underscore and contain only "
                "letters, numbers, and underscores."
            )
        if any(v.name == name and v.id != exclude_id for v in self.list_variables(context)):
            raise ValueError(f"A variable named {name!r} already exists for this connection.")

    # ---- 定义的增删改 ----

    def add_variable(self, context: ConnectionContext, name: str, query: str,
                     datasource_id: Optional[str] = None, datasource_name: Optional[str] = None, *,
                     regex: str = "", type: str = VARIABLE_TYPE_QUERY,
                     multi_select: bool = False) -> Variable:
        name = name.strip()
        self._check_name(context, name)
        query = query.strip()
        variable = Variable(
            id=self._next_id,
            name=name,
            query=query,
            datasourceId=datasource_id,
            datasourceName=datasource_name,
            connectionId=context.connection_id,
            type=type,
            regex=(regex or "").strip(),
            multiSelect=multi_select,
            dependsOn=extract_dependencies(query),
        )
        self._next_id += 1
        self.variables.append(variable)
        self._persist()
        logger.info(f"新增变量 id={variable.id} name={name} dependsOn={variable.dependsOn}")
        return variable

    def edit_variable(self, context: ConnectionContext, variable_id: int, *,
                      name: Optional[str] = None, query: Optional[str] = None,
                      regex: Optional[str] = None, datasource_id: Optional[str] = None,
                      datasource_name: Optional[str] = None) -> Variable:
        """修改定义后旧的取值不再有意义：清空取值/选择/错误，并使在途请求失效。"""
        variable = self._require(variable_id)
        if name is not None and name.strip() != variable.name:
            self._check_name(context, name.strip(), exclude_id=variable_id)
            variable.name = name.strip()
        if query is not None:
            variable.query = query.strip()
            variable.dependsOn = extract_dependencies(variable.query)
        if regex is not None:
            variable.regex = regex.strip()
        if datasource_id is not None:
            variable.datasourceId = datasource_id
        if datasource_name is not None:
            variable.datasourceName = datasource_name
        variable.values = []
        variable.selectedValue = None
        variable.selectedValues = []
        variable.error = None
        variable.loading = False
        variable.lastUpdated = None
        self._request_seq[variable_id] = self._request_seq.get(variable_id, 0) + 1
        self._persist()
        logger.info(f"编辑变量 id={variable_id} name={variable.name} dependsOn={variable.dependsOn}")
        return variable

    def remove_variable(self, variable_id: int) -> bool:
        before = len(self.variables)
        self.variables = [v for v in self.variables if v.id != variable_id]
        self._request_seq.pop(variable_id, None)
        removed = len(self.variables) != before
        if removed:
            self._persist()
            logger.info(f"删除变量 id={variable_id}")
        return removed

    def clear_all_variables(self) -> None:
        self.variables = []
        self._request_seq.clear()
        try:
            self.storage.clear_variables()
        except OSError as e:
            logger.error(f"清空变量存储失败: {e}")
        logger.info("已清空全部变量")

    def handle_datasource_removed(self, datasource_id: str) -> List[int]:
        """引用该数据源的变量进入错误状态，保留已有取值。"""
        affected = []
        for v in self.variables:
            if v.datasourceId == datasource_id:
                v.error = DATASOURCE_MISSING
                v.loading = False
                affected.append(v.id)
        if affected:
            self._persist()
            logger.warning(f"数据源已删除 uid={datasource_id} 受影响变量={affected}")
        return affected

    # ---- 选择 ----

    def toggle_multi_select(self, variable_id: int, enabled: bool) -> Variable:
        variable = self._require(variable_id)
        variable.multiSelect = enabled
        if enabled:
            variable.selectedValues = [variable.selectedValue] if variable.selectedValue is not None else []
        elif variable.selectedValues:
            variable.selectedValue = variable.selectedValues[0]
        else:
            variable.selectedValue = variable.values[0] if variable.values else None
        self._persist()
        return variable

    async def select_variable_value(self, context: ConnectionContext, variable_id: int,
                                    value: Union[str, Sequence[str], None]) -> List[int]:
        """修改选择并级联更新下游变量，返回被重新解析的变量 id。"""
        variable = self._require(variable_id)
        if value is None:
            selected: List[str] = []
        elif isinstance(value, str):
            selected = [value]
        else:
            selected = list(value)
        unknown = [v for v in selected if v not in variable.values]
        if unknown:
            raise ValueError(f"Values {unknown} are not options of variable {variable.name!r}")
        if variable.multiSelect:
            variable.selectedValues = selected
        else:
            if len(selected) > 1:
                raise ValueError(f"Variable {variable.name!r} is single-select")
            variable.selectedValue = selected[0] if selected else None
        self._persist()
        logger.info(f"选择变量值 id={variable_id} name={variable.name} value={selected}")
        return await self.update_dependent_variables(context, variable_id)

    # ---- 替换 ----

    def substitute_variables(self, text: str, context: ConnectionContext) -> str:
        return substitute(text, self.list_variables(context), context)

    # ---- 解析 ----

    def _is_current(self, variable: Variable, seq: int) -> bool:
        return self._request_seq.get(variable.id) == seq and self.get_variable(variable.id) is variable

    async def _execute_variable_query(self, context: ConnectionContext, variable: Variable) -> List[str]:
        query = self.substitute_variables(variable.query, context)
        if variable.type == VARIABLE_TYPE_CUSTOM:
            values = [part.strip() for part in query.split(",") if part.strip()]
        else:
            if not variable.datasourceId:
                raise GrafanaQueryError(DATASOURCE_MISSING)
            request = build_variable_request(
                variable.datasourceId, query,
                time_range=context.time_range or default_time_range(context.lookback_ms),
                max_data_points=context.max_data_points,
                context=context,
            )
            if is_label_lookup(request):
                dialect, extract_label = LABELED, request.get("extractLabel")
            else:
                validate_request(request)
                dialect = LABELED if "expr" in request["queries"][0] else SQL_LIKE
                extract_label = None
            raw = await self.transport.execute(request)
            values = reducer_for(dialect).reduce(raw, extract_label)
        if variable.regex:
            values = extract_regex_values(apply_regex_filter(values, variable.regex), variable.regex)
        return values

    def _commit_success(self, variable: Variable, values: List[str]) -> None:
        variable.values = values
        variable.error = None
        variable.loading = False
        variable.lastUpdated = utc_now_iso()
        if variable.selectedValue not in values:
            variable.selectedValue = values[0] if values else None
        variable.selectedValues = [v for v in variable.selectedValues if v in values]
        self._persist()

    def _commit_failure(self, variable: Variable, message: str) -> None:
        # 保留上一次成功的取值与选择
        variable.error = message or "Variable query failed"
        variable.loading = False
        self._persist()

    async def update_variable(self, context: ConnectionContext, variable_id: int) -> bool:
        """执行变量查询并写回取值。后端失败记录在 error 上并返回 False；
        label_values 语法错误等构建期错误记录后继续向上抛出。"""
        variable = self.get_variable(variable_id)
        if variable is None:
            logger.warning(f"变量不存在 id={variable_id}")
            return False
        seq = self._request_seq.get(variable_id, 0) + 1
        self._request_seq[variable_id] = seq
        variable.loading = True
        self._persist()
        logger.debug(f"解析变量 id={variable_id} name={variable.name} seq={seq} query={truncate(variable.query)}")
        try:
            values = await self._execute_variable_query(context, variable)
        except _BUILD_ERRORS as e:
            if self._is_current(variable, seq):
                self._commit_failure(variable, str(e))
            raise
        except Exception as e:
            if not self._is_current(variable, seq):
                logger.warning(f"丢弃过期的失败结果 id={variable_id} seq={seq}")
                return False
            logger.error(f"变量查询失败 id={variable_id} name={variable.name} err={e}")
            self._commit_failure(variable, str(e))
            return False
        if not self._is_current(variable, seq):
            logger.warning(f"丢弃过期的解析结果 id={variable_id} seq={seq}")
            return False
        self._commit_success(variable, values)
        logger.info(f"变量解析完成 id={variable_id} name={variable.name} values={len(values)}")
        return True

    async def _resolve_each(self, context: ConnectionContext, ids: List[int]) -> Dict[int, bool]:
        results: Dict[int, bool] = {}
        for vid in ids:
            try:
                results[vid] = await self.update_variable(context, vid)
            except _BUILD_ERRORS as e:
                # 单个变量的构建错误已记录在该变量上，不影响其他变量
                logger.error(f"变量查询构建失败 id={vid} err={e}")
                results[vid] = False
        return results

    async def update_dependent_variables(self, context: ConnectionContext, changed_id: int) -> List[int]:
        """重新解析所有直接或间接依赖 changed_id 的变量，每个最多一次，上游先于下游。"""
        plan = plan_cascade(self.list_variables(context), changed_id)
        if not plan:
            return []
        results = await self._resolve_each(context, plan)
        logger.info(f"级联更新完成 changed={changed_id} updated={plan} failed={[k for k, ok in results.items() if not ok]}")
        return plan

    async def refresh_all(self, context: ConnectionContext) -> Dict[int, bool]:
        order = resolution_order(self.list_variables(context))
        results = await self._resolve_each(context, order)
        logger.info(f"全部变量刷新完成 count={len(order)}")
        return results
