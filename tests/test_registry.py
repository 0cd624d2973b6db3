"""Tests for the connection registry."""

from __future__ import annotations

import asyncio
import functools
import json
from pathlib import Path
from typing import Any, Mapping

import httpx
import pytest

from connhub.config import CacheSettings, FileConfig
from connhub.errors import ConnectionManagerError, ErrorKind
from connhub.handlers import ForgeHandler, RestHandler
from connhub.handlers.base import ConnectionHandler
from connhub.models import HandlerState
from connhub.registry import ConnectionRegistry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _EchoHandler(ConnectionHandler):
    """Counts backend calls; optionally fails on connect or disconnect."""

    kind = "echo"
    config_model = FileConfig

    fail_connect = False
    fail_disconnect = False
    connect_delay = 0.0

    def __init__(self, config: Any, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.backend_calls = 0
        self.closed = False

    async def _open(self) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise OSError("backend unreachable")

    async def _close(self) -> None:
        self.closed = True
        if self.fail_disconnect:
            raise OSError("socket already gone")

    async def _probe(self) -> Mapping[str, Any]:
        return {"ok": True}

    async def _execute(self, request: Mapping[str, Any]) -> Any:
        async def _load() -> dict[str, Any]:
            self.backend_calls += 1
            return {"echo": dict(request), "call": self.backend_calls}

        return await self._cached(request.get("cacheKey"), _load)


CONFIG = {"source": "memory.json", "type": "json"}


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def registry(clock: _Clock) -> ConnectionRegistry:
    registry = ConnectionRegistry(clock=clock)
    registry.register_handler("echo", _EchoHandler)
    return registry


@pytest.mark.anyio
async def test_create_and_list(registry: ConnectionRegistry, clock: _Clock) -> None:
    result = await registry.create_connection("a", "echo", CONFIG)

    assert result.id == "a"
    assert result.kind == "echo"
    assert result.created_at == clock.now
    summaries = registry.list_connections()
    assert [(summary.id, summary.state) for summary in summaries] == [("a", HandlerState.CONNECTED)]


@pytest.mark.anyio
async def test_duplicate_id_is_rejected(tmp_path: Path) -> None:
    source = tmp_path / "x.json"
    source.write_text(json.dumps([{"n": 1}]))
    registry = ConnectionRegistry()
    await registry.create_connection("a", "json", {"source": str(source), "type": "json"})

    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.create_connection("a", "json", {"source": str(source), "type": "json"})

    assert excinfo.value.kind is ErrorKind.DUPLICATE_ID
    assert [summary.id for summary in registry.list_connections()] == ["a"]


@pytest.mark.anyio
async def test_concurrent_creates_with_same_id(registry: ConnectionRegistry, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(_EchoHandler, "connect_delay", 0.01)

    results = await asyncio.gather(
        registry.create_connection("a", "echo", CONFIG),
        registry.create_connection("a", "echo", CONFIG),
        return_exceptions=True,
    )

    errors = [result for result in results if isinstance(result, ConnectionManagerError)]
    assert len(errors) == 1
    assert errors[0].kind is ErrorKind.DUPLICATE_ID
    assert len(registry) == 1


@pytest.mark.anyio
async def test_unknown_kind_and_invalid_config_store_nothing(registry: ConnectionRegistry) -> None:
    with pytest.raises(ConnectionManagerError) as unknown:
        await registry.create_connection("a", "ldap", {})
    with pytest.raises(ConnectionManagerError) as invalid:
        await registry.create_connection("a", "echo", {"source": "x"})

    assert unknown.value.kind is ErrorKind.UNKNOWN_KIND
    assert invalid.value.kind is ErrorKind.INVALID_CONFIG
    assert registry.list_connections() == ()


@pytest.mark.anyio
async def test_failed_connect_disposes_and_stores_nothing(
    registry: ConnectionRegistry, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(_EchoHandler, "fail_connect", True)

    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.create_connection("a", "echo", CONFIG)

    assert excinfo.value.kind is ErrorKind.CONNECT_FAILED
    assert not registry.has_connection("a")
    # the id is free again
    monkeypatch.setattr(_EchoHandler, "fail_connect", False)
    await registry.create_connection("a", "echo", CONFIG)


@pytest.mark.anyio
async def test_handler_lookup_touches_but_info_does_not(registry: ConnectionRegistry, clock: _Clock) -> None:
    await registry.create_connection("a", "echo", CONFIG)
    created = clock.now

    clock.now += 10
    info = registry.get_connection_info("a")
    assert registry.has_connection("a")
    assert info.last_used_at == created
    assert info.handler["kind"] == "echo"

    registry.get_connection_handler("a")
    assert registry.get_connection_info("a").last_used_at == created + 10


@pytest.mark.anyio
async def test_query_test_and_clear_cache_touch(registry: ConnectionRegistry, clock: _Clock) -> None:
    await registry.create_connection("a", "echo", CONFIG)

    clock.now += 1
    await registry.query("a", {"q": 1})
    assert registry.get_connection_info("a").last_used_at == clock.now

    clock.now += 1
    report = await registry.test_connection("a")
    assert report.success
    assert registry.get_connection_info("a").last_used_at == clock.now

    clock.now += 1
    assert registry.clear_cache("a").success
    assert registry.get_connection_info("a").last_used_at == clock.now


@pytest.mark.anyio
async def test_clear_cache_then_query_hits_backend_once(registry: ConnectionRegistry) -> None:
    await registry.create_connection("a", "echo", CONFIG)
    handler = registry.get_connection_handler("a")
    await registry.query("a", {"cacheKey": "k"})
    await registry.query("a", {"cacheKey": "k"})
    assert handler.backend_calls == 1  # type: ignore[attr-defined]

    result = registry.clear_cache("a", "k")
    await registry.query("a", {"cacheKey": "k"})

    assert result.message == "Cleared cache key 'k'"
    assert handler.backend_calls == 2  # type: ignore[attr-defined]


@pytest.mark.anyio
async def test_remove_connection(registry: ConnectionRegistry) -> None:
    await registry.create_connection("a", "echo", CONFIG)
    handler = registry.get_connection_handler("a")

    result = await registry.remove_connection("a")

    assert result.id == "a"
    assert handler.state is HandlerState.DISPOSED
    with pytest.raises(ConnectionManagerError) as excinfo:
        registry.get_connection_handler("a")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_remove_unknown_id(registry: ConnectionRegistry) -> None:
    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.remove_connection("ghost")

    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_remove_surfaces_disconnect_failure_after_removal(
    registry: ConnectionRegistry, monkeypatch: pytest.MonkeyPatch
) -> None:
    await registry.create_connection("a", "echo", CONFIG)
    monkeypatch.setattr(_EchoHandler, "fail_disconnect", True)

    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.remove_connection("a")

    assert excinfo.value.kind is ErrorKind.DISCONNECT_FAILED
    assert not registry.has_connection("a")


@pytest.mark.anyio
async def test_create_then_remove_restores_listing(registry: ConnectionRegistry) -> None:
    await registry.create_connection("keep", "echo", CONFIG)
    before = [summary.id for summary in registry.list_connections()]

    await registry.create_connection("temp", "echo", CONFIG)
    await registry.remove_connection("temp")

    assert [summary.id for summary in registry.list_connections()] == before


@pytest.mark.anyio
async def test_query_errors_leave_the_connection_usable(registry: ConnectionRegistry) -> None:
    await registry.create_connection("a", "echo", CONFIG)

    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.query("missing", {})

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert (await registry.query("a", {"q": 2}))["call"] == 1


@pytest.mark.anyio
async def test_create_from_data_source_folds_settings(registry: ConnectionRegistry) -> None:
    result = await registry.create_from_data_source(
        {
            "name": "inventory",
            "sourceType": "echo",
            "config": {"source": "inventory.json", "type": "json"},
            "cacheEnabled": False,
            "cacheTtl": 12,
            "timeout": 2500,
            "headers": {"X-Team": "ops"},
        }
    )

    handler = registry.get_connection_handler("inventory")
    assert result.id == "inventory"
    assert handler.config.cache == CacheSettings(enabled=False, ttl_seconds=12)
    assert handler.config.timeout_ms == 2500
    assert handler.config.headers == {"X-Team": "ops"}


@pytest.mark.anyio
async def test_create_from_data_source_prefers_explicit_id(registry: ConnectionRegistry) -> None:
    result = await registry.create_from_data_source({"id": "ds-1", "name": "inventory", "kind": "echo", "config": CONFIG})

    assert result.id == "ds-1"


@pytest.mark.anyio
async def test_create_from_invalid_data_source(registry: ConnectionRegistry) -> None:
    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.create_from_data_source({"kind": "echo"})

    assert excinfo.value.kind is ErrorKind.INVALID_CONFIG


class _TrackingTransport(httpx.MockTransport):
    """Answers every request with one status and records whether it was closed."""

    def __init__(self, status: int) -> None:
        super().__init__(lambda request: httpx.Response(status))
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("kind", "ctor", "config", "expected"),
    [
        ("rest", RestHandler, {"baseUrl": "https://api.example.com"}, ErrorKind.CONNECT_FAILED),
        ("forge", ForgeHandler, {"forgeUrl": "https://forge.example.com"}, ErrorKind.AUTH_FAILED),
    ],
)
async def test_failed_connect_closes_the_http_client(
    kind: str, ctor: type[ConnectionHandler], config: dict[str, str], expected: ErrorKind
) -> None:
    transport = _TrackingTransport(503)
    registry = ConnectionRegistry()
    registry.register_handler(kind, functools.partial(ctor, transport=transport))

    with pytest.raises(ConnectionManagerError) as excinfo:
        await registry.create_connection("a", kind, config)

    assert excinfo.value.kind is expected
    assert transport.closed
    assert not registry.has_connection("a")


@pytest.mark.anyio
async def test_disconnect_of_unopened_handler_still_releases_resources() -> None:
    handler = _EchoHandler(CONFIG)

    await handler.disconnect()

    assert handler.closed
    assert handler.state is HandlerState.DISPOSED
