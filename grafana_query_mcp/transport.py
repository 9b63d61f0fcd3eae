from __future__ import annotations

import httpx
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from grafana_query_mcp.exceptions import ResultShapeError, TransportError
from grafana_query_mcp.request_builder import is_label_lookup
from grafana_query_mcp.utils import parse_duration_to_seconds, truncate


class Transport(Protocol):
    async def execute(self, request: Dict[str, Any]) -> Any: ...


class GrafanaTransport:
    """通过 Grafana HTTP API 执行请求描述。
    - 查询请求描述 => POST /api/ds/query
    - 标签查询描述 => GET {url}，参数为 params
    """

    def __init__(self, base_url: str, api_token: Optional[str] = None, request_timeout: Optional[str] = None,
                 org_id: Optional[int] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        timeout_seconds = parse_duration_to_seconds(request_timeout, 30.0)
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        if org_id is not None:
            headers["X-Grafana-Org-Id"] = str(org_id)
        logger.debug(f"初始化 GrafanaTransport base_url={self.base_url} timeout={timeout_seconds}s auth={'yes' if api_token else 'no'}")
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.headers = headers

    async def execute(self, request: Dict[str, Any]) -> Any:
        if is_label_lookup(request):
            url = f"{self.base_url}{request['url']}"
            logger.debug(f"执行标签查询 url={url} params={request.get('params')}")
            send = self.client.get(url, params=request.get("params") or {}, headers=self.headers)
        else:
            url = f"{self.base_url}/api/ds/query"
            exprs = [q.get("expr") or q.get("query") for q in request.get("queries") or []]
            logger.debug(f"执行查询 url={url} count={len(exprs)} first={truncate(exprs[0] if exprs else '')}")
            send = self.client.post(url, json=request, headers=self.headers)
        try:
            r = await send
        except httpx.TimeoutException as e:
            logger.error(f"Grafana 请求超时 url={url}")
            raise TransportError(None, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Grafana 请求失败 url={url} err={e}")
            raise TransportError(None, f"Request failed: {e}") from e
        if r.status_code < 200 or r.status_code >= 300:
            logger.error(f"Grafana 返回非 2xx status={r.status_code} body={truncate(r.text)}")
            raise TransportError(r.status_code, r.text or r.reason_phrase)
        try:
            data = r.json()
        except ValueError as e:
            logger.exception("Grafana 返回非 JSON")
            raise ResultShapeError(f"Invalid JSON response: {truncate(r.text)}") from e
        logger.info(f"请求完成 url={url} status={r.status_code}")
        return data

    async def aclose(self) -> None:
        await self.client.aclose()
