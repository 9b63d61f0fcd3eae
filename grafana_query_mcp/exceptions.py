"""
grafana-query-mcp 的异常定义
"""
from __future__ import annotations

from typing import Optional


class GrafanaQueryError(Exception):
    """所有异常的基类"""
    pass


class ConfigurationError(GrafanaQueryError):
    """配置文件缺失或校验失败"""
    pass


class RequestValidationError(GrafanaQueryError, ValueError):
    """请求描述结构不合法（validate_request）"""
    pass


class LabelValuesFormatError(GrafanaQueryError, ValueError):
    """label_values(...) 语法错误，构建阶段即抛出"""
    pass


class ResultShapeError(GrafanaQueryError):
    """后端返回结构无法解析，或返回体本身携带错误"""
    pass


class VariableNotFoundError(GrafanaQueryError, KeyError):
    def __init__(self, variable_id: int):
        super().__init__(variable_id)
        self.variable_id = variable_id

    def __str__(self) -> str:
        return f"Variable not found: {self.variable_id}"


class TransportError(GrafanaQueryError):
    """传输层失败：非 2xx、超时、连接错误等"""

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.status_code} {self.message}"
