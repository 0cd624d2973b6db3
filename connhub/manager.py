"""Uniform connection-manager surface composing the registry and supervisor."""

from __future__ import annotations

import logging
import time
from types import TracebackType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from .config import DataSourceConfig, ManagerSettings, load_config
from .errors import ConnectionManagerError
from .factory import HandlerFactory
from .handlers.base import Clock, ConnectionHandler, HandlerConstructor
from .models import (
    BatchOperation,
    BatchResult,
    CacheClearResult,
    CleanupResult,
    CloseAllResult,
    ConnectionFailure,
    ConnectionSummary,
    CreationResult,
    HandlerTestReport,
    InfoRecord,
    RemovalResult,
    StatsSnapshot,
    ValidationOutcome,
)
from .registry import ConnectionRegistry
from .supervisor import Supervisor

LOG = logging.getLogger(__name__)


class ConnectionManager:
    """Entry point owning one registry of heterogeneous connections.

    Construct one per process (or per test) and pass it to collaborators.
    Used as an async context manager it closes every connection on exit.
    """

    def __init__(
        self,
        *,
        factory: HandlerFactory | None = None,
        settings: ManagerSettings | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings or ManagerSettings()
        self.registry = ConnectionRegistry(factory, clock=clock)
        self.supervisor = Supervisor(self.registry)

    @classmethod
    def from_settings(cls, settings: ManagerSettings | None = None, **kwargs: Any) -> ConnectionManager:
        """Build a manager from ``settings``, loading the config file when omitted."""

        return cls(settings=settings or load_config(), **kwargs)

    async def __aenter__(self) -> ConnectionManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close_all()

    async def open_data_sources(
        self,
        sources: Iterable[DataSourceConfig | Mapping[str, Any]] | None = None,
    ) -> tuple[tuple[CreationResult, ...], tuple[ConnectionFailure, ...]]:
        """Create a connection for each data source; failures are collected, not raised."""

        created: list[CreationResult] = []
        failures: list[ConnectionFailure] = []
        for source in self.settings.data_sources if sources is None else sources:
            if isinstance(source, DataSourceConfig):
                connection_id = source.connection_id
            else:
                connection_id = str(source.get("id") or source.get("name"))
            try:
                created.append(await self.create_from_data_source(source))
            except ConnectionManagerError as exc:
                LOG.warning(
                    "Could not open data source",
                    extra={"connection_id": connection_id, "error_kind": exc.kind.value},
                )
                failures.append(ConnectionFailure(id=connection_id, error=str(exc), kind=exc.kind.value))
        return tuple(created), tuple(failures)

    async def create_connection(
        self,
        connection_id: str,
        kind: str,
        config: BaseModel | Mapping[str, Any],
    ) -> CreationResult:
        return await self.registry.create_connection(connection_id, kind, config)

    async def create_from_data_source(self, source: DataSourceConfig | Mapping[str, Any]) -> CreationResult:
        return await self.registry.create_from_data_source(source)

    def get_connection_handler(self, connection_id: str) -> ConnectionHandler:
        return self.registry.get_connection_handler(connection_id)

    def has_connection(self, connection_id: str) -> bool:
        return self.registry.has_connection(connection_id)

    async def remove_connection(self, connection_id: str) -> RemovalResult:
        return await self.registry.remove_connection(connection_id)

    async def test_connection(self, connection_id: str) -> HandlerTestReport:
        return await self.registry.test_connection(connection_id)

    async def query(self, connection_id: str, request: Mapping[str, Any]) -> Any:
        return await self.registry.query(connection_id, request)

    def clear_cache(self, connection_id: str, key: str | None = None) -> CacheClearResult:
        return self.registry.clear_cache(connection_id, key)

    def get_connection_info(self, connection_id: str) -> InfoRecord:
        return self.registry.get_connection_info(connection_id)

    def list_connections(self) -> tuple[ConnectionSummary, ...]:
        return self.registry.list_connections()

    async def close_all(self) -> CloseAllResult:
        return await self.supervisor.close_all()

    async def cleanup_idle(self, max_idle_ms: float | None = None) -> CleanupResult:
        threshold = self.settings.idle_timeout_ms if max_idle_ms is None else max_idle_ms
        return await self.supervisor.cleanup_idle(threshold)

    async def batch(self, operations: Iterable[BatchOperation | Mapping[str, Any]]) -> BatchResult:
        return await self.supervisor.batch(operations)

    def get_stats(self) -> StatsSnapshot:
        return self.supervisor.stats()

    def register_handler(self, kind: str, ctor: HandlerConstructor) -> None:
        self.registry.register_handler(kind, ctor)

    def validate_config(self, kind: str, config: BaseModel | Mapping[str, Any]) -> ValidationOutcome:
        return self.registry.factory.validate_config(kind, config)


__all__ = ["ConnectionManager"]
