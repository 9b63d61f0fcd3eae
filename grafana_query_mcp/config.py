from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError
from loguru import logger

from grafana_query_mcp.exceptions import ConfigurationError
from grafana_query_mcp.models import ConnectionContext
from grafana_query_mcp.utils import parse_duration_to_seconds


class GrafanaConfig(BaseModel):
    baseUrl: str
    apiToken: Optional[str] = None
    queryTimeout: Optional[str] = None
    orgId: Optional[int] = None


class DatasourceConfig(BaseModel):
    uid: str
    name: Optional[str] = None
    type: str


class QueryDefaults(BaseModel):
    maxDataPoints: int = 300
    intervalMs: int = 15000
    # 变量查询的回看窗口
    variableLookback: str = "24h"
    # $__interval 的替换值
    interval: str = "1m"


class StorageConfig(BaseModel):
    variablesPath: str = "variables.json"


class GlobalConfig(BaseModel):
    grafanaConfig: GrafanaConfig
    connectionId: Optional[str] = None
    datasources: List[DatasourceConfig] = Field(default_factory=list)
    queryDefaults: QueryDefaults = Field(default_factory=QueryDefaults)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    serverPort: Optional[int] = Field(default=7000, description="MCP 服务监听端口")


@dataclass
class ConfigManager:
    global_config: GlobalConfig

    @property
    def base_url(self) -> str:
        return self.global_config.grafanaConfig.baseUrl

    @property
    def connection_id(self) -> str:
        return self.global_config.connectionId or self.base_url.rstrip("/")

    def connection_context(self) -> ConnectionContext:
        qd = self.global_config.queryDefaults
        lookback_ms = int(parse_duration_to_seconds(qd.variableLookback, 86400.0) * 1000)
        return ConnectionContext(
            connection_id=self.connection_id,
            datasources={ds.uid: ds.type for ds in self.global_config.datasources},
            interval=qd.interval,
            lookback_ms=lookback_ms,
            max_data_points=qd.maxDataPoints,
        )

    @staticmethod
    def load(path: Optional[str] = None) -> "ConfigManager":
        cfg_path = path or os.getenv("GRAFANA_QUERY_CONFIG_PATH") or os.path.abspath("config.json")
        logger.debug(f"加载配置文件: {cfg_path}")
        try:
            with open(cfg_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"配置文件读取失败: {e}")
            raise ConfigurationError(f"Cannot read config file {cfg_path}: {e}") from e
        try:
            gc = GlobalConfig.model_validate(raw)
        except ValidationError as e:
            logger.error(f"配置文件校验失败: {e}")
            raise ConfigurationError(f"Invalid config.json: {e}") from e
        logger.info(
            f"配置加载成功: grafanaBase={gc.grafanaConfig.baseUrl} datasources={len(gc.datasources)} "
            f"variablesPath={gc.storage.variablesPath} port={gc.serverPort}"
        )
        return ConfigManager(global_config=gc)
