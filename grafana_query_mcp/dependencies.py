"""变量依赖图。

边 B -> A 表示 A 的查询文本引用了变量 B。dependsOn 只在新增/编辑变量时计算，
遍历前先对边做快照，遍历过程中不会重算。
"""
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Sequence, Set

from loguru import logger

from grafana_query_mcp.models import Variable
from grafana_query_mcp.substitution import token_names


def extract_dependencies(query: str) -> List[str]:
    return token_names(query)


def _snapshot(variables: Iterable[Variable]) -> tuple:
    order: List[int] = []
    depends: Dict[int, tuple] = {}
    name_to_id: Dict[str, int] = {}
    for v in variables:
        order.append(v.id)
        depends[v.id] = tuple(v.dependsOn)
        name_to_id.setdefault(v.name, v.id)
    names = {vid: name for name, vid in name_to_id.items()}
    return order, depends, name_to_id, names


def _topological(ids: Sequence[int], upstream: Dict[int, Set[int]]) -> List[int]:
    """按输入顺序稳定的拓扑排序；遇到环时取剩余中最靠前的一个打破环。"""
    remaining = list(ids)
    done: Set[int] = set()
    ordered: List[int] = []
    while remaining:
        ready = next((vid for vid in remaining if upstream.get(vid, set()) <= done), None)
        if ready is None:
            ready = remaining[0]
            logger.debug(f"依赖环，强制解析 id={ready}")
        remaining.remove(ready)
        done.add(ready)
        ordered.append(ready)
    return ordered


def plan_cascade(variables: Iterable[Variable], changed_id: int) -> List[int]:
    """计算 changed_id 变化后需要重新解析的变量 id（不含自身），按依赖顺序排列。
    每个变量最多出现一次；已访问的节点不再下探（环或菱形依赖）。"""
    order, depends, name_to_id, names = _snapshot(variables)
    if changed_id not in depends:
        return []
    dependents: Dict[str, List[int]] = {}
    for vid in order:
        for name in depends[vid]:
            dependents.setdefault(name, []).append(vid)

    visited = {changed_id}
    affected: List[int] = []
    queue = deque([changed_id])
    while queue:
        current = queue.popleft()
        for vid in dependents.get(names.get(current, ""), []):
            if vid in visited:
                logger.debug(f"跳过已访问变量 id={vid} (环或菱形依赖)")
                continue
            visited.add(vid)
            affected.append(vid)
            queue.append(vid)

    affected_set = set(affected)
    upstream = {
        vid: {name_to_id[n] for n in depends[vid] if name_to_id.get(n) in affected_set and name_to_id[n] != vid}
        for vid in affected
    }
    plan = _topological(affected, upstream)
    logger.debug(f"级联更新计划 changed={changed_id} plan={plan}")
    return plan


def resolution_order(variables: Iterable[Variable]) -> List[int]:
    """全部变量的解析顺序：上游先于下游。"""
    order, depends, name_to_id, _ = _snapshot(variables)
    upstream = {
        vid: {name_to_id[n] for n in depends[vid] if n in name_to_id and name_to_id[n] != vid}
        for vid in order
    }
    return _topological(order, upstream)
