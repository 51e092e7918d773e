from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import quote

import httpx

from logproxy.core.config import Settings, get_settings
from logproxy.core.errors import UpstreamError
from logproxy.services.telemetry import Telemetry


logger = logging.getLogger(__name__)


def _extract_detail(response: httpx.Response) -> Any:
    # Prefer the engine's error.reason, then the error envelope, then the raw body.
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("reason"):
            return error["reason"]
        if error:
            return error
    return data


def _index_path(index_pattern: str) -> str:
    return quote(index_pattern.strip("/"), safe="*,-_.")


class SearchExecutor:
    """Thin async client for the search engine.

    Every call carries the configured timeout and none are retried: a failed
    search is terminal for the request that issued it.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._telemetry = telemetry or Telemetry()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # One pooled client per executor.
        settings = self._settings
        auth = None
        if settings.search_username:
            auth = httpx.BasicAuth(settings.search_username, settings.search_password or "")
        self._client = httpx.AsyncClient(
            base_url=settings.search_url.rstrip("/"),
            timeout=settings.search_timeout_s,
            verify=settings.search_verify_ssl,
            auth=auth,
        )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            self._telemetry.record_upstream(operation, (time.monotonic() - start) * 1000.0, ok=False)
            logger.warning("search_engine_unreachable operation=%s error=%s", operation, exc)
            raise UpstreamError(502, str(exc) or exc.__class__.__name__) from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            self._telemetry.record_upstream(operation, latency_ms, ok=False)
            raise UpstreamError(response.status_code, _extract_detail(response))
        self._telemetry.record_upstream(operation, latency_ms, ok=True)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(502, "Search engine returned a non-JSON body") from exc

    async def search(
        self,
        index_pattern: str,
        body: dict[str, Any],
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "search",
            "POST",
            f"/{_index_path(index_pattern)}/_search",
            json=body,
            params=params,
        )

    async def scroll(self, scroll_id: str, ttl: str) -> dict[str, Any]:
        return await self._request(
            "scroll",
            "POST",
            "/_search/scroll",
            json={"scroll": ttl, "scroll_id": scroll_id},
        )

    async def clear_scroll(self, scroll_id: str) -> None:
        # Cursors expire server-side anyway, so a failed delete is not an error.
        try:
            await self._request("clear_scroll", "DELETE", "/_search/scroll", json={"scroll_id": scroll_id})
        except UpstreamError as exc:
            logger.info("clear_scroll_failed status=%s", exc.status)

    async def field_caps(self, index_pattern: str, fields: list[str]) -> dict[str, Any]:
        data = await self._request(
            "field_caps",
            "GET",
            f"/{_index_path(index_pattern)}/_field_caps",
            params={"fields": ",".join(fields)},
        )
        caps = data.get("fields") if isinstance(data, dict) else None
        return caps if isinstance(caps, dict) else {}

    async def cluster_health(self) -> dict[str, Any]:
        return await self._request("cluster_health", "GET", "/_cluster/health")
