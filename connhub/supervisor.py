"""Registry-wide maintenance: drain, idle reaping, batch dispatch and stats."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable, Mapping

from .config import DEFAULT_IDLE_TIMEOUT_MS
from .errors import ConnectionManagerError, ErrorKind, redact
from .models import (
    BatchItemResult,
    BatchOperation,
    BatchResult,
    CleanupResult,
    CloseAllResult,
    ConnectionFailure,
    StatsSnapshot,
)
from .registry import ConnectionRegistry

LOG = logging.getLogger(__name__)


def _failure(connection_id: str, exc: Exception) -> ConnectionFailure:
    if isinstance(exc, ConnectionManagerError):
        return ConnectionFailure(id=connection_id, error=str(exc), kind=exc.kind.value)
    return ConnectionFailure(id=connection_id, error=redact(f"{type(exc).__name__}: {exc}"))


class Supervisor:
    """Operations spanning every connection in a registry."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def close_all(self) -> CloseAllResult:
        """Disconnect every handler; the registry ends up empty even if some fail."""

        errors: list[ConnectionFailure] = []
        drained = self.registry.drain()
        for connection_id, handler in drained:
            try:
                await handler.disconnect()
            except Exception as exc:
                LOG.warning("Disconnect failed during close_all", extra={"connection_id": connection_id})
                errors.append(_failure(connection_id, exc))
        LOG.info("Closed all connections", extra={"closed": len(drained), "errors": len(errors)})
        return CloseAllResult(success=not errors, errors=tuple(errors))

    async def cleanup_idle(self, max_idle_ms: float | None = None) -> CleanupResult:
        """Remove connections idle for longer than ``max_idle_ms``.

        The idle set is computed once up front. A connection that is used after
        that snapshot but before its turn comes is still removed.
        """

        threshold = DEFAULT_IDLE_TIMEOUT_MS if max_idle_ms is None else max_idle_ms
        now = self.registry.clock()
        idle = [
            summary.id
            for summary in self.registry.list_connections()
            if (now - summary.last_used_at) * 1000 > threshold
        ]
        removed: list[str] = []
        errors: list[ConnectionFailure] = []
        for connection_id in idle:
            try:
                await self.registry.remove_connection(connection_id)
            except ConnectionManagerError as exc:
                errors.append(_failure(connection_id, exc))
                if exc.kind is not ErrorKind.DISCONNECT_FAILED:
                    continue
            removed.append(connection_id)
        if idle:
            LOG.info("Removed idle connections", extra={"removed": removed, "max_idle_ms": threshold})
        return CleanupResult(removed=tuple(removed), errors=tuple(errors))

    async def batch(self, operations: Iterable[BatchOperation | Mapping[str, Any]]) -> BatchResult:
        """Run each operation in order; one failure never affects the others."""

        results: list[BatchItemResult] = []
        for raw in operations:
            operation = BatchOperation.coerce(raw)
            try:
                value = await self.registry.query(operation.connection_id, operation.query)
            except ConnectionManagerError as exc:
                results.append(
                    BatchItemResult(
                        connection_id=operation.connection_id,
                        success=False,
                        error=str(exc),
                        kind=exc.kind.value,
                    )
                )
            except Exception as exc:
                LOG.exception("Batch operation failed", extra={"connection_id": operation.connection_id})
                results.append(
                    BatchItemResult(
                        connection_id=operation.connection_id,
                        success=False,
                        error=redact(f"{type(exc).__name__}: {exc}"),
                    )
                )
            else:
                results.append(BatchItemResult(connection_id=operation.connection_id, success=True, result=value))
        succeeded = sum(1 for item in results if item.success)
        return BatchResult(results=tuple(results), success_count=succeeded, error_count=len(results) - succeeded)

    def stats(self) -> StatsSnapshot:
        summaries = self.registry.list_connections()
        if not summaries:
            return StatsSnapshot(total=0, by_kind={})
        return StatsSnapshot(
            total=len(summaries),
            by_kind=dict(Counter(summary.kind for summary in summaries)),
            oldest=min(summaries, key=lambda summary: summary.created_at),
            newest=max(summaries, key=lambda summary: summary.created_at),
            most_recently_used=max(summaries, key=lambda summary: summary.last_used_at),
            least_recently_used=min(summaries, key=lambda summary: summary.last_used_at),
        )


__all__ = ["Supervisor"]
