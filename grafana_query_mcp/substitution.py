from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from loguru import logger

from grafana_query_mcp.models import ConnectionContext, Variable
from grafana_query_mcp.utils import default_time_range, truncate

# ${name} 或 $name
TOKEN_RE = re.compile(r"\$\{(?P<braced>[a-zA-Z_][a-zA-Z0-9_]*)\}|\$(?P<bare>[a-zA-Z_][a-zA-Z0-9_]*)")
# InfluxQL: host =~ /${hosts}/   PromQL: {host=~"${hosts}"}
_REGEX_CONTEXT_RE = re.compile(r'[=!]~\s*(?:(?P<slash>/)[^/]*|(?P<quote>")[^"]*)$')

BUILTIN_VARIABLES = frozenset({"__interval", "timeFilter"})


def token_names(text: Optional[str]) -> List[str]:
    """按首次出现顺序返回文本中引用的变量名（不含内置变量）。"""
    names: List[str] = []
    for m in TOKEN_RE.finditer(text or ""):
        name = m.group("braced") or m.group("bare")
        if name not in BUILTIN_VARIABLES and name not in names:
            names.append(name)
    return names


def time_filter(time_range: Optional[Dict[str, str]]) -> str:
    tr = time_range or default_time_range()
    return f"time >= {tr['from']}ms and time <= {tr['to']}ms"


def _format_multi(values: List[str], regex_context: Optional[str]) -> str:
    if regex_context is None:
        return ",".join(f'"{v}"' for v in values)
    escaped = [re.escape(v) for v in values]
    if regex_context == "quote":
        # 双引号字符串内反斜杠需要再转义一次
        escaped = [v.replace("\\", "\\\\") for v in escaped]
    return "(" + "|".join(escaped) + ")"


def _regex_context(text: str, start: int) -> Optional[str]:
    """token 位于 =~ / !~ 正则匹配内时返回分隔符类型（slash / quote），否则 None。"""
    m = _REGEX_CONTEXT_RE.search(text, 0, start)
    if m is None:
        return None
    return "slash" if m.group("slash") else "quote"


def substitute(text: str, variables: Iterable[Variable], context: Optional[ConnectionContext] = None) -> str:
    """单次扫描替换变量占位符，替换结果不会再被扫描。
    未知变量或尚未选值的变量保持原样，因此对未解析的文本重复调用是幂等的。"""
    if not text:
        return text
    by_name = {v.name: v for v in variables}

    def replace(m: re.Match) -> str:
        name = m.group("braced") or m.group("bare")
        if name == "__interval" and context is not None:
            return context.interval
        if name == "timeFilter" and context is not None:
            return time_filter(context.time_range)
        variable = by_name.get(name)
        if variable is None:
            return m.group(0)
        if variable.multiSelect:
            if not variable.selectedValues:
                return m.group(0)
            return _format_multi(variable.selectedValues, _regex_context(text, m.start()))
        if variable.selectedValue is None:
            return m.group(0)
        return variable.selectedValue

    result = TOKEN_RE.sub(replace, text)
    if result != text:
        logger.debug(f"变量替换 {truncate(text)} -> {truncate(result)}")
    return result
