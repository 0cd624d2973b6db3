"""Shared httpx plumbing for the network-capable handlers."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Mapping

import httpx


def build_client(
    *,
    base_url: str = "",
    headers: Mapping[str, str] | None = None,
    timeout_ms: int,
    auth: httpx.Auth | None = None,
    verify: bool = True,
    cert: str | tuple[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Construct the client a handler owns for its whole lifetime."""

    kwargs: dict[str, Any] = {
        "headers": dict(headers or {}),
        "timeout": httpx.Timeout(timeout_ms / 1000),
        "auth": auth,
    }
    if base_url:
        kwargs["base_url"] = base_url
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["verify"] = verify
        if cert is not None:
            kwargs["cert"] = cert
    return httpx.AsyncClient(**kwargs)


def decode_body(response: httpx.Response) -> Any:
    """Return JSON for JSON responses, text otherwise, None for empty bodies."""

    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        return response.json()
    try:
        return response.json()
    except ValueError:
        return response.text


def is_url(source: str) -> bool:
    return httpx.URL(source).scheme in {"http", "https"} if "://" in source else False


class RateLimiter:
    """Spaces outbound requests at least ``1 / requests_per_second`` apart."""

    def __init__(self, requests_per_second: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = 1.0 / requests_per_second
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last is not None:
                delay = self._last + self._interval - now
                if delay > 0:
                    await asyncio.sleep(delay)
                    now = self._clock()
            self._last = now


__all__ = ["RateLimiter", "build_client", "decode_body", "is_url"]
