from __future__ import annotations

import re
import time
from typing import Any, Dict, Optional

DEFAULT_INTERVAL_MS = 10_000
DEFAULT_RANGE_MS = 3_600_000

_INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}


def parse_duration_to_seconds(text: str | None, default: float = 30.0) -> float:
    if not text:
        return default
    t = text.strip().lower()
    try:
        if t.endswith("ms"):
            return float(t[:-2]) / 1000.0
        if t.endswith("s"):
            return float(t[:-1])
        if t.endswith("m"):
            return float(t[:-1]) * 60.0
        if t.endswith("h"):
            return float(t[:-1]) * 3600.0
        if t.endswith("d"):
            return float(t[:-1]) * 86400.0
        return float(t)
    except ValueError:
        return default


def parse_interval(interval: Any) -> int:
    """将 30s / 5m / 2h / 1d 形式的间隔解析为毫秒。
    任何无法解析或非正的输入都回退到 DEFAULT_INTERVAL_MS，从不抛异常。"""
    if not interval or not isinstance(interval, str):
        return DEFAULT_INTERVAL_MS
    m = _INTERVAL_RE.match(interval)
    if not m:
        return DEFAULT_INTERVAL_MS
    value = int(m.group(1))
    if value <= 0:
        return DEFAULT_INTERVAL_MS
    return value * _UNIT_MS[m.group(2)]


def now_ms() -> int:
    return int(time.time() * 1000)


def default_time_range(span_ms: int = DEFAULT_RANGE_MS, *, end_ms: Optional[int] = None) -> Dict[str, str]:
    # 默认最近一小时，半开区间 [from, to)
    end = now_ms() if end_ms is None else end_ms
    return {"from": str(end - span_ms), "to": str(end)}


def normalize_time_range(time_range: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not time_range:
        return default_time_range()
    return {"from": str(time_range["from"]), "to": str(time_range["to"])}


def ref_id_for_index(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA ..."""
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def truncate(text: str | None, limit: int = 120) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
