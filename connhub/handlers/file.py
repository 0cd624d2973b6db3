"""File handler: JSON, XML, CSV and TSV documents from disk or a URL."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar, Mapping

import httpx

from ..config import FILE_TYPES, FileConfig
from ..errors import ConnectionManagerError, ErrorKind
from .base import ConnectionHandler
from .documents import parse_delimited, parse_json, parse_xml, select_json_path
from .http import build_client, is_url
from .records import filter_records, paginate, sort_records

LOG = logging.getLogger(__name__)

OPERATIONS = ("read", "count", "find", "findOne")


class FileHandler(ConnectionHandler):
    """Loads a document once and answers tabular queries against it in memory."""

    kind: ClassVar[str] = "file"
    config_model = FileConfig

    def __init__(
        self,
        config: FileConfig | Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        if self.config.type not in FILE_TYPES:
            raise ConnectionManagerError(
                ErrorKind.UNSUPPORTED_TYPE,
                f"file type '{self.config.type}' is not one of {', '.join(FILE_TYPES)}",
                handler_kind=self.kind,
                action="configure",
            )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._document: Any = None
        self._records: tuple[Any, ...] = ()
        self._load_lock = asyncio.Lock()
        self.last_modified_at: datetime | None = None

    @property
    def is_remote(self) -> bool:
        return is_url(self.config.source)

    @property
    def document(self) -> Any:
        return self._document

    async def reload(self) -> None:
        """Re-read and re-parse the source, replacing the in-memory document."""

        async with self._load_lock:
            text = await self._read_source()
            document = self._parse(text)
            self._document = document
            self._records = tuple(document) if isinstance(document, list) else (document,)
            self.last_modified_at = datetime.now(tz=timezone.utc)
            self.cache.invalidate()
        LOG.debug(
            "Loaded file source",
            extra={"source": self.config.source, "records": len(self._records)},
        )

    async def _open(self) -> None:
        if self.is_remote and self._client is None:
            self._client = build_client(
                headers=self.config.headers,
                timeout_ms=self.config.timeout_ms,
                transport=self._transport,
            )
        await self.reload()

    async def _close(self) -> None:
        client, self._client = self._client, None
        self._document = None
        self._records = ()
        if client is not None:
            await client.aclose()

    async def _probe(self) -> Mapping[str, Any]:
        if self.is_remote:
            assert self._client is not None
            response = await self._client.head(self.config.source)
            if response.status_code >= 400:
                response.raise_for_status()
        else:
            exists = await asyncio.to_thread(Path(self.config.source).exists)
            if not exists:
                raise FileNotFoundError(self.config.source)
        return {"source": self.config.source, "records": len(self._records)}

    async def _execute(self, request: Mapping[str, Any]) -> Any:
        operation = request.get("operation", "read")
        if operation not in OPERATIONS:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unsupported file operation '{operation}'")
        if request.get("reload"):
            await self.reload()
        cache_key = request.get("cacheKey", request.get("cache_key"))
        return await self._cached(cache_key, lambda: self._run(operation, request))

    async def _run(self, operation: str, request: Mapping[str, Any]) -> Any:
        filtered = filter_records(self._records, request.get("filters"))
        if operation == "count":
            return len(filtered)
        ordered = sort_records(filtered, request.get("sortBy", request.get("sort_by")))
        if operation == "findOne":
            return copy.deepcopy(ordered[0]) if ordered else None
        page = paginate(ordered, request.get("limit"), request.get("offset"))
        if operation == "find":
            return copy.deepcopy(list(page.data))
        return copy.deepcopy(page)

    def _describe(self) -> Mapping[str, Any]:
        return {
            "source": self.config.source,
            "type": self.config.type,
            "remote": self.is_remote,
            "record_count": len(self._records),
            "last_modified_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
        }

    async def _read_source(self) -> str:
        if self.is_remote:
            if self._client is None:
                raise ConnectionManagerError(ErrorKind.NOT_CONNECTED, "remote source has no client")
            response = await self._client.get(self.config.source)
            response.raise_for_status()
            return response.text
        path = Path(self.config.source)
        return await asyncio.to_thread(path.read_text, encoding=self.config.encoding)

    def _parse(self, text: str) -> Any:
        config: FileConfig = self.config
        if config.type == "json":
            document = parse_json(text)
            return select_json_path(document, config.json_path) if config.json_path else document
        if config.type == "xml":
            return parse_xml(text, xpath=config.xpath)
        delimiter = config.delimiter or ("\t" if config.type == "tsv" else ",")
        return parse_delimited(
            text,
            delimiter=delimiter,
            headers=config.csv_headers,
            trim=config.trim,
            dynamic_typing=config.dynamic_typing,
        )


__all__ = ["FileHandler", "OPERATIONS"]
