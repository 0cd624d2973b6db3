"""Shared dataclasses returned across the registry, supervisor and handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class HandlerState(str, Enum):
    """Lifecycle of a handler."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISPOSED = "disposed"


@dataclass(frozen=True, slots=True)
class CreationResult:
    id: str
    kind: str
    created_at: float


@dataclass(frozen=True, slots=True)
class RemovalResult:
    id: str


@dataclass(frozen=True, slots=True)
class ConnectionSummary:
    """Point-in-time view of one registry entry."""

    id: str
    kind: str
    created_at: float
    last_used_at: float
    state: HandlerState


@dataclass(frozen=True, slots=True)
class InfoRecord:
    id: str
    kind: str
    created_at: float
    last_used_at: float
    handler: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class HandlerTestReport:
    success: bool
    message: str
    latency_ms: int | None = None
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CacheClearResult:
    success: bool
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    valid: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionFailure:
    """A failure captured while iterating the registry."""

    id: str
    error: str
    kind: str | None = None


@dataclass(frozen=True, slots=True)
class CloseAllResult:
    success: bool
    errors: tuple[ConnectionFailure, ...] = ()


@dataclass(frozen=True, slots=True)
class CleanupResult:
    removed: tuple[str, ...]
    errors: tuple[ConnectionFailure, ...] = ()


@dataclass(frozen=True, slots=True)
class BatchOperation:
    connection_id: str
    query: Mapping[str, Any]

    @classmethod
    def coerce(cls, operation: BatchOperation | Mapping[str, Any]) -> BatchOperation:
        if isinstance(operation, BatchOperation):
            return operation
        connection_id = operation.get("connectionId", operation.get("connection_id"))
        return cls(connection_id=str(connection_id), query=operation.get("query") or {})


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    connection_id: str
    success: bool
    result: Any = None
    error: str | None = None
    kind: str | None = None


@dataclass(frozen=True, slots=True)
class BatchResult:
    results: tuple[BatchItemResult, ...]
    success_count: int
    error_count: int


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    total: int
    by_kind: Mapping[str, int]
    oldest: ConnectionSummary | None = None
    newest: ConnectionSummary | None = None
    most_recently_used: ConnectionSummary | None = None
    least_recently_used: ConnectionSummary | None = None


__all__ = [
    "BatchItemResult",
    "BatchOperation",
    "BatchResult",
    "CacheClearResult",
    "CleanupResult",
    "CloseAllResult",
    "ConnectionFailure",
    "ConnectionSummary",
    "CreationResult",
    "HandlerState",
    "HandlerTestReport",
    "InfoRecord",
    "RemovalResult",
    "StatsSnapshot",
    "ValidationOutcome",
]
