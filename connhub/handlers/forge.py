"""Forge business-object API handler with service-token refresh."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping
from urllib.parse import quote

import httpx

from ..config import ForgeConfig
from ..errors import ConnectionManagerError, ErrorKind
from .base import ConnectionHandler
from .http import build_client, decode_body

LOG = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 3600
TOKEN_PATH = "/api/tokens/service"

ENTITY_OPERATIONS = ("list", "get", "create", "update", "delete", "search")

_REQUIRED_PERMISSION = {
    "list": "read",
    "get": "read",
    "search": "read",
    "create": "write",
    "update": "update",
    "delete": "delete",
}


@dataclass(frozen=True, slots=True)
class ForgeResult:
    """Payload unwrapped from the ``{data, total, hasMore}`` envelope."""

    data: Any
    total: int | None = None
    has_more: bool = False


@dataclass(slots=True)
class _ServiceToken:
    token: str
    expires_at: float


class ForgeHandler(ConnectionHandler):
    """Talks to Forge entity endpoints using a CA-issued service token.

    The token is requested on connect and re-requested before any call made
    at or after its expiry. The expiry is always one hour from issuance; any
    expiry the CA reports is ignored.
    """

    kind: ClassVar[str] = "forge"
    config_model = ForgeConfig

    def __init__(
        self,
        config: ForgeConfig | Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._token: _ServiceToken | None = None
        self._token_lock = asyncio.Lock()

    async def _open(self) -> None:
        config: ForgeConfig = self.config
        if self._client is None:
            self._client = build_client(
                base_url=config.forge_url,
                headers={"Content-Type": "application/json", **config.headers},
                timeout_ms=config.timeout_ms,
                verify=config.verify_tls,
                transport=self._transport,
            )
        await self._refresh_token()

    async def _close(self) -> None:
        client, self._client = self._client, None
        self._token = None
        if client is not None:
            await client.aclose()

    async def _probe(self) -> Mapping[str, Any]:
        response = await self._send("GET", "/health")
        return {"status": response.status_code}

    async def _execute(self, request: Mapping[str, Any]) -> ForgeResult:
        operation = request.get("operation", "list")
        entity = str(request.get("entity") or "").strip("/")
        if operation not in ENTITY_OPERATIONS:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unsupported Forge operation '{operation}'")
        if not entity:
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, "Forge query requires 'entity'")
        self._check_permission(operation)
        cache_key = request.get("cacheKey", request.get("cache_key"))
        return await self._cached(cache_key, lambda: self._entity_call(operation, entity, request))

    async def get_schema(self, entity: str) -> Any:
        """Entity schema lookup; cached by default."""

        self._ensure_connected("schema")
        with self._guard("schema"):
            return await self._cached(f"schema:{entity}", lambda: self._get_json(f"/api/schemas/{_segment(entity)}"))

    async def list_entities(self) -> Any:
        """Entity catalogue lookup; cached by default."""

        self._ensure_connected("entities")
        with self._guard("entities"):
            return await self._cached("entities", lambda: self._get_json("/api/schemas"))

    def _describe(self) -> Mapping[str, Any]:
        token = self._token
        now = self._clock()
        return {
            "forge_url": self.config.forge_url,
            "ca_url": self.config.ca_url,
            "token_valid": token is not None and now < token.expires_at,
            "token_expires_in": max(token.expires_at - now, 0.0) if token else None,
            "permissions": self.config.permissions.model_dump(),
        }

    def secrets(self) -> tuple[str, ...]:
        return (self._token.token,) if self._token else ()

    async def _entity_call(self, operation: str, entity: str, request: Mapping[str, Any]) -> ForgeResult:
        record_id = request.get("id")
        if operation in {"get", "update", "delete"} and record_id in (None, ""):
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, f"Forge '{operation}' requires 'id'")
        params = request.get("params") or request.get("filters") or None
        data = request.get("data")
        entity = _segment(entity)
        if record_id is not None:
            record_id = _segment(record_id)
        if operation == "list":
            response = await self._send("GET", f"/api/{entity}", params=params)
        elif operation == "create":
            response = await self._send("POST", f"/api/{entity}", json=data)
        elif operation == "get":
            response = await self._send("GET", f"/api/{entity}/{record_id}", params=params)
        elif operation == "update":
            response = await self._send("PUT", f"/api/{entity}/{record_id}", json=data)
        elif operation == "delete":
            response = await self._send("DELETE", f"/api/{entity}/{record_id}")
        else:
            response = await self._send("POST", f"/api/{entity}/search", json=data if data is not None else params)
        return _unwrap(decode_body(response))

    async def _get_json(self, path: str) -> Any:
        response = await self._send("GET", path)
        return _unwrap(decode_body(response)).data

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise ConnectionManagerError(ErrorKind.NOT_CONNECTED, "Forge client is not open")
        await self._ensure_token()
        assert self._token is not None
        headers = {"Authorization": f"Bearer {self._token.token}"}
        response = await self._client.request(method, path, headers=headers, **kwargs)
        response.raise_for_status()
        return response

    async def _ensure_token(self) -> None:
        async with self._token_lock:
            if self._token is None or self._clock() >= self._token.expires_at:
                LOG.debug("Refreshing Forge service token", extra={"ca_url": self.config.ca_url})
                await self._acquire_token()

    async def _refresh_token(self) -> None:
        async with self._token_lock:
            await self._acquire_token()

    async def _acquire_token(self) -> None:
        assert self._client is not None
        config: ForgeConfig = self.config
        body = {
            "serviceName": config.service_name,
            "resource": config.resource or config.forge_url,
            "permissions": config.permissions.model_dump(),
            "ttl": TOKEN_TTL_SECONDS,
        }
        url = f"{config.ca_url.rstrip('/')}{TOKEN_PATH}"
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED,
                f"service token request to {url} failed: {type(exc).__name__}",
                handler_kind=self.kind,
                action="authenticate",
            ) from exc
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token and isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            token = payload["data"].get("token")
        if not token:
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED,
                "service token response did not include a token",
                handler_kind=self.kind,
                action="authenticate",
            )
        self._token = _ServiceToken(token=str(token), expires_at=self._clock() + TOKEN_TTL_SECONDS)

    def _check_permission(self, operation: str) -> None:
        permission = _REQUIRED_PERMISSION[operation]
        if not getattr(self.config.permissions, permission):
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED,
                f"'{operation}' requires the '{permission}' permission, which this connection does not request",
            )


def _segment(value: Any) -> str:
    """Percent-encode one path segment so ids like ``a/../b`` stay inside it."""

    return quote(str(value), safe="")


def _unwrap(payload: Any) -> ForgeResult:
    if isinstance(payload, dict) and "data" in payload:
        total = payload.get("total")
        return ForgeResult(
            data=payload["data"],
            total=int(total) if isinstance(total, (int, float)) else None,
            has_more=bool(payload.get("hasMore", False)),
        )
    return ForgeResult(data=payload)


__all__ = ["ENTITY_OPERATIONS", "ForgeHandler", "ForgeResult", "TOKEN_TTL_SECONDS"]
