"""Registry of live connections keyed by caller-chosen ids."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Collection, Mapping

from pydantic import BaseModel, ValidationError

from .config import DataSourceConfig
from .errors import ConnectionManagerError, ErrorKind
from .factory import HandlerFactory
from .handlers.base import Clock, ConnectionHandler, HandlerConstructor, format_validation_error
from .models import (
    CacheClearResult,
    ConnectionSummary,
    CreationResult,
    HandlerTestReport,
    InfoRecord,
    RemovalResult,
)

LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class _ConnectionEntry:
    id: str
    kind: str
    handler: ConnectionHandler
    created_at: float
    last_used_at: float

    def summary(self) -> ConnectionSummary:
        return ConnectionSummary(
            id=self.id,
            kind=self.kind,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            state=self.handler.state,
        )


class ConnectionRegistry:
    """Owns every connection and its handler.

    An entry exists only for handlers that connected successfully. Ids whose
    creation is still in flight are reserved, so a concurrent create with the
    same id fails with ``DUPLICATE_ID`` instead of racing.
    """

    def __init__(self, factory: HandlerFactory | None = None, *, clock: Clock = time.monotonic) -> None:
        self.factory = factory or HandlerFactory()
        self.clock = clock
        self._entries: dict[str, _ConnectionEntry] = {}
        self._pending: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    async def create_connection(
        self,
        connection_id: str,
        kind: str,
        config: BaseModel | Mapping[str, Any],
    ) -> CreationResult:
        if connection_id in self._entries or connection_id in self._pending:
            raise ConnectionManagerError(ErrorKind.DUPLICATE_ID, f"connection '{connection_id}' already exists")
        self._pending.add(connection_id)
        try:
            canonical, handler = self.factory.build(kind, config)
            try:
                await handler.connect()
            except BaseException:
                await self._dispose_quietly(connection_id, handler)
                raise
            now = self.clock()
            self._entries[connection_id] = _ConnectionEntry(
                id=connection_id,
                kind=canonical,
                handler=handler,
                created_at=now,
                last_used_at=now,
            )
        finally:
            self._pending.discard(connection_id)
        LOG.info("Created connection", extra={"connection_id": connection_id, "kind": canonical})
        return CreationResult(id=connection_id, kind=canonical, created_at=now)

    async def create_from_data_source(self, source: DataSourceConfig | Mapping[str, Any]) -> CreationResult:
        """Create a connection from a stored data source; the id defaults to its name."""

        if not isinstance(source, DataSourceConfig):
            try:
                source = DataSourceConfig.model_validate(source)
            except ValidationError as exc:
                raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, format_validation_error(exc)) from exc
        model = self.factory.config_model(source.kind)
        fields = model.model_fields if model is not None else {}
        config = _fold_data_source(fields, source)
        return await self.create_connection(source.connection_id, source.kind, config)

    def get_connection_handler(self, connection_id: str) -> ConnectionHandler:
        return self._touch(connection_id).handler

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._entries

    async def remove_connection(self, connection_id: str) -> RemovalResult:
        """Drop the entry, then disconnect; a disconnect failure is raised after removal."""

        entry = self._entries.pop(connection_id, None)
        if entry is None:
            raise _not_found(connection_id)
        try:
            await entry.handler.disconnect()
        except ConnectionManagerError:
            LOG.warning("Removed connection with a failed disconnect", extra={"connection_id": connection_id})
            raise
        except Exception as exc:
            raise ConnectionManagerError(
                ErrorKind.DISCONNECT_FAILED,
                f"{type(exc).__name__}: {exc}",
                handler_kind=entry.kind,
                action="disconnect",
            ) from exc
        LOG.info("Removed connection", extra={"connection_id": connection_id, "kind": entry.kind})
        return RemovalResult(id=connection_id)

    def get_connection_info(self, connection_id: str) -> InfoRecord:
        entry = self._lookup(connection_id)
        return InfoRecord(
            id=entry.id,
            kind=entry.kind,
            created_at=entry.created_at,
            last_used_at=entry.last_used_at,
            handler=entry.handler.info(),
        )

    def list_connections(self) -> tuple[ConnectionSummary, ...]:
        return tuple(entry.summary() for entry in self._entries.values())

    def register_handler(self, kind: str, ctor: HandlerConstructor) -> None:
        self.factory.register(kind, ctor)

    async def test_connection(self, connection_id: str) -> HandlerTestReport:
        return await self._touch(connection_id).handler.test()

    async def query(self, connection_id: str, request: Mapping[str, Any]) -> Any:
        return await self._touch(connection_id).handler.query(request)

    def clear_cache(self, connection_id: str, key: str | None = None) -> CacheClearResult:
        entry = self._touch(connection_id)
        cleared = entry.handler.clear_cache(key)
        if key is None:
            message = f"Cleared {cleared} cache entries"
        else:
            message = f"Cleared cache key '{key}'" if cleared else f"Cache key '{key}' was not cached"
        return CacheClearResult(success=True, message=message)

    def drain(self) -> tuple[tuple[str, ConnectionHandler], ...]:
        """Empty the registry and hand back every ``(id, handler)`` for disposal."""

        drained = tuple((entry.id, entry.handler) for entry in self._entries.values())
        self._entries.clear()
        return drained

    def _lookup(self, connection_id: str) -> _ConnectionEntry:
        entry = self._entries.get(connection_id)
        if entry is None:
            raise _not_found(connection_id)
        return entry

    def _touch(self, connection_id: str) -> _ConnectionEntry:
        entry = self._lookup(connection_id)
        entry.last_used_at = max(self.clock(), entry.created_at)
        return entry

    async def _dispose_quietly(self, connection_id: str, handler: ConnectionHandler) -> None:
        try:
            await handler.disconnect()
        except Exception:
            LOG.exception("Failed to dispose handler after failed create", extra={"connection_id": connection_id})


def _not_found(connection_id: str) -> ConnectionManagerError:
    return ConnectionManagerError(ErrorKind.NOT_FOUND, f"connection '{connection_id}' does not exist")


def _has_key(config: Mapping[str, Any], *names: str) -> bool:
    return any(name in config for name in names)


def _fold_data_source(fields: Collection[str], source: DataSourceConfig) -> dict[str, Any]:
    """Merge data-source level cache, timeout, headers and auth into the fields the handler config has."""

    config = dict(source.config)
    if "cache" in fields:
        cache = dict(config.get("cache") or {})
        if source.cache_enabled is not None:
            cache["enabled"] = source.cache_enabled
        if source.cache_ttl is not None:
            cache.pop("ttl_seconds", None)
            cache["ttlSeconds"] = source.cache_ttl
        if cache:
            config["cache"] = cache
    if "timeout_ms" in fields and source.timeout is not None and not _has_key(config, "timeoutMs", "timeout_ms"):
        config["timeoutMs"] = source.timeout
    if "headers" in fields and source.headers:
        config["headers"] = {**source.headers, **(config.get("headers") or {})}
    if "auth" in fields and source.auth_config and "auth" not in config:
        config["auth"] = source.auth_config
    return config


__all__ = ["ConnectionRegistry"]
