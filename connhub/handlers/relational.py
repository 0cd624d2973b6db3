"""PostgreSQL handler backed by an asyncpg connection pool."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Iterable, Mapping, Sequence, TypeVar

import asyncpg
from sqlglot import exp

from ..config import RelationalConfig
from ..errors import ConnectionManagerError, ErrorKind
from .base import ConnectionHandler

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_ROW_RETURNING_HEADS = {"select", "with", "show", "values", "table", "explain"}
_VERBS = {"select", "insert", "update", "delete"}


@dataclass(frozen=True, slots=True)
class RelationalResult:
    """Normalized statement output."""

    rows: tuple[dict[str, Any], ...]
    row_count: int
    fields: tuple[str, ...]
    status: str = ""


@dataclass(slots=True)
class _Statement:
    sql: str
    params: list[Any] = field(default_factory=list)

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"


class RelationalHandler(ConnectionHandler):
    """Runs SQL through a pool sized by ``poolSize``; the pool survives query failures."""

    kind: ClassVar[str] = "relational"
    config_model = RelationalConfig

    def __init__(self, config: RelationalConfig | Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._pool: asyncpg.Pool | None = None
        self._waiting = 0

    async def _open(self) -> None:
        if self._pool is not None:
            return
        config: RelationalConfig = self.config
        pool_kwargs: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "user": config.user,
            "password": config.password,
            "database": config.database,
            "min_size": 0,
            "max_size": config.pool_size,
            "max_inactive_connection_lifetime": config.idle_timeout_ms / 1000,
            "timeout": config.connect_timeout_ms / 1000,
            "command_timeout": config.timeout_ms / 1000,
        }
        if config.tls is not None and config.tls is not False:
            pool_kwargs["ssl"] = "require" if config.tls is True else config.tls
        pool_kwargs.update(config.options)
        self._pool = await asyncio.wait_for(
            asyncpg.create_pool(**pool_kwargs),
            timeout=config.connect_timeout_ms / 1000,
        )
        LOG.info(
            "Relational pool ready",
            extra={"host": config.host, "database": config.database, "max_size": config.pool_size},
        )

    async def _close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    async def _probe(self) -> Mapping[str, Any]:
        async with self._session() as conn:
            await conn.fetch("SELECT 1")
        return self._describe()

    async def _execute(self, request: Mapping[str, Any]) -> RelationalResult:
        operation = request.get("operation")
        if operation is not None:
            if operation not in _VERBS:
                raise ConnectionManagerError(
                    ErrorKind.UNKNOWN_OPERATION, f"unsupported relational operation '{operation}'"
                )
            return await self._run_verb(str(operation), request)
        sql = str(request.get("sql") or "").strip()
        if not sql:
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, "query requires 'sql'")
        params = tuple(request.get("params") or ())
        cache_key = request.get("cacheKey", request.get("cache_key"))
        return await self._cached(cache_key, lambda: self._run(sql, params))

    def _describe(self) -> Mapping[str, Any]:
        pool = self._pool
        return {
            "connected": self.connected,
            "total_count": pool.get_size() if pool is not None else 0,
            "idle_count": pool.get_idle_size() if pool is not None else 0,
            "waiting_count": self._waiting,
            "max_size": self.config.pool_size,
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
        }

    def secrets(self) -> tuple[str, ...]:
        return (self.config.password,)

    async def transaction(self, body: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``body`` inside BEGIN/COMMIT on one pooled session, rolling back on failure."""

        self._ensure_connected("transaction")
        with self._guard("transaction"):
            async with self._session() as conn:
                await conn.execute("BEGIN")
                try:
                    result = await body(conn)
                    await conn.execute("COMMIT")
                except BaseException:
                    try:
                        await conn.execute("ROLLBACK")
                    except Exception:
                        LOG.exception("Rollback failed", extra={"database": self.config.database})
                    raise
                return result

    async def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        *,
        where: Mapping[str, Any] | None = None,
        order_by: str | Sequence[str | tuple[str, str]] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        cache_key: str | None = None,
    ) -> RelationalResult:
        statement = _Statement("")
        projection = ", ".join(quote_identifier(column) for column in columns) if columns else "*"
        parts = [f"SELECT {projection} FROM {quote_identifier(table)}"]
        predicate = _where_clause(statement, where)
        if predicate:
            parts.append(f"WHERE {predicate}")
        if order_by:
            parts.append(f"ORDER BY {_order_clause(order_by)}")
        if limit is not None:
            parts.append(f"LIMIT {statement.bind(int(limit))}")
        if offset is not None:
            parts.append(f"OFFSET {statement.bind(int(offset))}")
        statement.sql = " ".join(parts)
        return await self.query({"sql": statement.sql, "params": statement.params, "cacheKey": cache_key})

    async def insert(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        returning: str | Sequence[str] | None = "*",
    ) -> RelationalResult:
        if not values:
            raise ConnectionManagerError(
                ErrorKind.INVALID_CONFIG, "insert requires at least one value", handler_kind=self.kind, action="insert"
            )
        statement = _Statement("")
        columns = ", ".join(quote_identifier(column) for column in values)
        placeholders = ", ".join(statement.bind(value) for value in values.values())
        statement.sql = f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})"
        statement.sql += _returning_clause(returning)
        return await self.query({"sql": statement.sql, "params": statement.params})

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Mapping[str, Any] | None,
        *,
        returning: str | Sequence[str] | None = None,
    ) -> RelationalResult:
        if not where:
            raise ConnectionManagerError(
                ErrorKind.UNSAFE_DELETE,
                "refusing to update every row without a predicate",
                handler_kind=self.kind,
                action="update",
            )
        if not values:
            raise ConnectionManagerError(
                ErrorKind.INVALID_CONFIG, "update requires at least one value", handler_kind=self.kind, action="update"
            )
        statement = _Statement("")
        assignments = ", ".join(f"{quote_identifier(column)} = {statement.bind(value)}" for column, value in values.items())
        predicate = _where_clause(statement, where)
        statement.sql = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {predicate}"
        statement.sql += _returning_clause(returning)
        return await self.query({"sql": statement.sql, "params": statement.params})

    async def delete(
        self,
        table: str,
        where: Mapping[str, Any] | None,
        *,
        returning: str | Sequence[str] | None = None,
    ) -> RelationalResult:
        if not where:
            raise ConnectionManagerError(
                ErrorKind.UNSAFE_DELETE,
                "refusing to delete every row without a predicate",
                handler_kind=self.kind,
                action="delete",
            )
        statement = _Statement("")
        predicate = _where_clause(statement, where)
        statement.sql = f"DELETE FROM {quote_identifier(table)} WHERE {predicate}"
        statement.sql += _returning_clause(returning)
        return await self.query({"sql": statement.sql, "params": statement.params})

    async def _run_verb(self, operation: str, request: Mapping[str, Any]) -> RelationalResult:
        table = str(request.get("table") or "")
        if not table:
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, f"{operation} requires 'table'")
        where = request.get("where")
        if operation == "select":
            return await self.select(
                table,
                request.get("columns"),
                where=where,
                order_by=request.get("orderBy", request.get("order_by")),
                limit=request.get("limit"),
                offset=request.get("offset"),
                cache_key=request.get("cacheKey", request.get("cache_key")),
            )
        if operation == "insert":
            return await self.insert(table, request.get("values") or {}, returning=request.get("returning", "*"))
        if operation == "update":
            return await self.update(table, request.get("values") or {}, where, returning=request.get("returning"))
        return await self.delete(table, where, returning=request.get("returning"))

    async def _run(self, sql: str, params: Sequence[Any]) -> RelationalResult:
        async with self._session() as conn:
            if _returns_rows(sql):
                # column names come from the statement so empty results still report them
                statement = await conn.prepare(sql)
                records = await statement.fetch(*params)
                fields = tuple(attribute.name for attribute in statement.get_attributes())
                return _records_to_result(records, fields)
            status = await conn.execute(sql, *params)
        return RelationalResult(rows=(), row_count=_row_count_from_status(status), fields=(), status=str(status))

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[Any]:
        pool = self._pool
        if pool is None:
            raise ConnectionManagerError(ErrorKind.NOT_CONNECTED, "pool is not open")
        self._waiting += 1
        try:
            conn = await pool.acquire()
        finally:
            self._waiting -= 1
        try:
            yield conn
        finally:
            await pool.release(conn)


def quote_identifier(name: str) -> str:
    """Quote a possibly schema-qualified identifier for PostgreSQL."""

    return ".".join(
        exp.to_identifier(part, quoted=True).sql(dialect="postgres") for part in name.split(".")
    )


def _where_clause(statement: _Statement, where: Mapping[str, Any] | None) -> str:
    clauses: list[str] = []
    for column, value in (where or {}).items():
        target = quote_identifier(column)
        if value is None:
            clauses.append(f"{target} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(f"{target} = ANY({statement.bind(list(value))})")
        else:
            clauses.append(f"{target} = {statement.bind(value)}")
    return " AND ".join(clauses)


def _order_clause(order_by: str | Sequence[str | tuple[str, str]]) -> str:
    items: Iterable[str | tuple[str, str]] = [order_by] if isinstance(order_by, str) else order_by
    parts: list[str] = []
    for item in items:
        column, direction = (item, "asc") if isinstance(item, str) else (item[0], item[1])
        direction = direction.lower()
        if direction not in {"asc", "desc"}:
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, f"invalid sort direction '{direction}'")
        parts.append(f"{quote_identifier(column)} {direction.upper()}")
    return ", ".join(parts)


def _returning_clause(returning: str | Sequence[str] | None) -> str:
    if not returning:
        return ""
    if returning == "*":
        return " RETURNING *"
    columns = [returning] if isinstance(returning, str) else list(returning)
    return " RETURNING " + ", ".join(quote_identifier(column) for column in columns)


def _returns_rows(statement: str) -> bool:
    token = statement.lstrip().split(None, 1)
    if not token:
        return False
    head = token[0].lower()
    return head in _ROW_RETURNING_HEADS or " returning " in f" {statement.lower()} "


def _records_to_result(records: Iterable[Any], fields: tuple[str, ...]) -> RelationalResult:
    rows: list[dict[str, Any]] = []
    for record in records:
        rows.append({key: record[key] for key in record.keys()})
    return RelationalResult(rows=tuple(rows), row_count=len(rows), fields=fields, status=f"SELECT {len(rows)}")


def _row_count_from_status(status: Any) -> int:
    # Command tags look like "INSERT 0 3", "UPDATE 2", "DELETE 0".
    tail = str(status or "").rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


__all__ = ["RelationalHandler", "RelationalResult", "quote_identifier"]
