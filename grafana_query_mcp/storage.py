from __future__ import annotations

import json
import os
from typing import List, Protocol

from loguru import logger
from pydantic import ValidationError

from grafana_query_mcp.models import Variable


class VariableStorage(Protocol):
    def load_variables(self) -> List[Variable]: ...

    def save_variables(self, variables: List[Variable]) -> None: ...

    def clear_variables(self) -> None: ...


class InMemoryVariableStorage:
    def __init__(self, variables: List[Variable] | None = None):
        self._raw = [v.model_dump() for v in variables or []]
        self.save_count = 0

    def load_variables(self) -> List[Variable]:
        return [Variable.model_validate(item) for item in self._raw]

    def save_variables(self, variables: List[Variable]) -> None:
        self._raw = [v.model_dump() for v in variables]
        self.save_count += 1

    def clear_variables(self) -> None:
        self._raw = []


class JsonFileVariableStorage:
    """把变量列表保存为一个 JSON 数组文件。"""

    def __init__(self, path: str):
        self.path = os.path.abspath(path)

    def load_variables(self) -> List[Variable]:
        if not os.path.exists(self.path):
            logger.debug(f"变量文件不存在，返回空列表: {self.path}")
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        variables = []
        for item in raw if isinstance(raw, list) else []:
            try:
                variables.append(Variable.model_validate(item))
            except ValidationError as e:
                logger.warning(f"跳过无法解析的变量记录: {e}")
        logger.info(f"从 {self.path} 加载变量 count={len(variables)}")
        return variables

    def save_variables(self, variables: List[Variable]) -> None:
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump([v.model_dump() for v in variables], f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"保存变量 count={len(variables)} path={self.path}")

    def clear_variables(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
        logger.info(f"已清空变量文件: {self.path}")
