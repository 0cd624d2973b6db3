"""Generic REST handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, ClassVar, Mapping

import httpx

from ..config import RestConfig
from ..errors import ConnectionManagerError, ErrorKind
from .auth import build_auth
from .base import ConnectionHandler
from .http import RateLimiter, build_client, decode_body
from .records import get_nested_value

LOG = logging.getLogger(__name__)

PageStop = Callable[[Any, int], bool]


@dataclass(frozen=True, slots=True)
class RestResult:
    status: int
    data: Any
    headers: Mapping[str, str]


class RestHandler(ConnectionHandler):
    """Dispatches HTTP requests against ``baseUrl`` with the configured auth profile."""

    kind: ClassVar[str] = "rest"
    config_model = RestConfig

    def __init__(
        self,
        config: RestConfig | Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        rate_limit = self.config.rate_limit
        self._limiter = RateLimiter(rate_limit.requests_per_second, clock=self._clock) if rate_limit else None

    async def _open(self) -> None:
        config: RestConfig = self.config
        if self._client is None:
            headers = {"Accept": config.accept, "Content-Type": config.content_type, **config.headers}
            self._client = build_client(
                base_url=config.base_url,
                headers=headers,
                timeout_ms=config.timeout_ms,
                auth=build_auth(config.auth, clock=self._clock),
                verify=config.verify_tls,
                transport=self._transport,
            )
        if config.test_on_connect:
            await self._health_check()

    async def _close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _probe(self) -> Mapping[str, Any]:
        return await self._health_check()

    async def _execute(self, request: Mapping[str, Any]) -> RestResult:
        method = str(request.get("method") or "GET").upper()
        endpoint = str(request.get("endpoint") or "/")
        cache_key = request.get("cacheKey", request.get("cache_key"))

        async def _load() -> RestResult:
            response = await self._send(
                method,
                endpoint,
                json=request.get("data"),
                params=request.get("params"),
                headers=request.get("headers"),
            )
            return RestResult(status=response.status_code, data=decode_body(response), headers=dict(response.headers))

        if method == "GET" and cache_key:
            return await self._cached(cache_key, _load)
        return await _load()

    async def paginate(
        self,
        endpoint: str,
        *,
        page_size: int = 50,
        page_param: str = "page",
        size_param: str = "limit",
        start_page: int = 1,
        max_pages: int | None = None,
        items_path: str | None = None,
        stop: PageStop | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[Any]:
        """Yield page payloads in backend order until a short page, ``stop`` or ``max_pages``."""

        self._ensure_connected("paginate")
        page = start_page
        fetched = 0
        while max_pages is None or fetched < max_pages:
            query = {**(params or {}), page_param: page, size_param: page_size}
            with self._guard("paginate"):
                response = await self._send("GET", endpoint, params=query)
                payload = decode_body(response)
            fetched += 1
            yield payload
            if stop is not None and stop(payload, page):
                return
            if len(_page_items(payload, items_path)) < page_size:
                return
            page += 1

    def _describe(self) -> Mapping[str, Any]:
        auth = self.config.auth
        return {
            "base_url": self.config.base_url,
            "auth_type": auth.type if auth else None,
            "health_endpoint": self.config.health_endpoint,
            "rate_limited": self._limiter is not None,
        }

    def secrets(self) -> tuple[str, ...]:
        return self.config.auth.secrets() if self.config.auth else ()

    async def _health_check(self) -> Mapping[str, Any]:
        endpoint = self.config.health_endpoint
        try:
            response = await self._send("GET", endpoint, raise_for_status=False)
        except httpx.HTTPError as exc:
            LOG.debug("Health endpoint unreachable", extra={"endpoint": endpoint, "error": type(exc).__name__})
            response = None
        if response is not None and response.status_code < 400:
            return {"endpoint": endpoint, "status": response.status_code}
        root = await self._send("GET", "/", raise_for_status=False)
        if root.status_code >= 500:
            root.raise_for_status()
        return {"endpoint": "/", "status": root.status_code}

    async def _send(
        self,
        method: str,
        endpoint: str,
        *,
        raise_for_status: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise ConnectionManagerError(ErrorKind.NOT_CONNECTED, "REST client is not open")
        if kwargs.get("json") is None:
            kwargs.pop("json", None)
        if self._limiter is not None:
            await self._limiter.wait()
        response = await self._client.request(method, endpoint, **kwargs)
        if raise_for_status:
            response.raise_for_status()
        return response


def _page_items(payload: Any, items_path: str | None) -> list[Any]:
    if items_path:
        items = get_nested_value(payload, items_path)
        return list(items) if isinstance(items, list) else []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("data", "items", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


__all__ = ["RestHandler", "RestResult"]
