"""Configuration models for the connection manager and each backend kind."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Mapping

import tomllib
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "connhub" / "config.toml"

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_IDLE_TIMEOUT_MS = 3_600_000


class _ConfigModel(BaseModel):
    """Base for config documents: camelCase on the wire, closed schema, immutable."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class CacheSettings(_ConfigModel):
    """Cache policy inherited by a handler from its connection config."""

    enabled: bool = True
    ttl_seconds: float = Field(default=300.0, gt=0)
    max_entries: int = Field(default=1000, gt=0)


AuthType = Literal["basic", "bearer", "apiKey", "oauth2", "custom", "wss", "clientCert"]


class AuthConfig(_ConfigModel):
    """Authentication profile for REST and SOAP handlers."""

    type: AuthType
    username: str | None = None
    password: str | None = None
    token: str | None = None
    api_key: str | None = None
    header_name: str = "X-API-Key"
    location: Literal["header", "query"] = Field(default="header", alias="in")
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    cert_file: str | None = None
    key_file: str | None = None

    @model_validator(mode="after")
    def _check_required_fields(self) -> AuthConfig:
        required: dict[str, tuple[str, ...]] = {
            "basic": ("username", "password"),
            "bearer": ("token",),
            "apiKey": ("api_key",),
            "oauth2": ("token_url", "client_id", "client_secret"),
            "custom": ("headers",),
            "wss": ("username", "password"),
            "clientCert": ("cert_file",),
        }
        missing = [name for name in required[self.type] if not getattr(self, name)]
        if missing:
            raise ValueError(f"auth type '{self.type}' requires: {', '.join(missing)}")
        return self

    def secrets(self) -> tuple[str, ...]:
        values = (self.password, self.token, self.api_key, self.client_secret)
        return tuple(value for value in values if value) + tuple(self.headers.values())


class RelationalConfig(_ConfigModel):
    host: str
    database: str
    user: str
    password: str
    port: int = 5432
    pool_size: int = Field(default=10, gt=0)
    idle_timeout_ms: int = Field(default=30_000, ge=0)
    connect_timeout_ms: int = Field(default=5_000, gt=0)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    tls: bool | str | None = None
    cache: CacheSettings = Field(default_factory=CacheSettings)
    options: dict[str, Any] = Field(default_factory=dict)


class ForgePermissions(_ConfigModel):
    read: bool = True
    write: bool = True
    update: bool = True
    delete: bool = False


class ForgeConfig(_ConfigModel):
    forge_url: str
    ca_url: str = "http://localhost:3000"
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    service_name: str = "connhub"
    resource: str | None = None
    permissions: ForgePermissions = Field(default_factory=ForgePermissions)
    headers: dict[str, str] = Field(default_factory=dict)
    verify_tls: bool = True
    cache: CacheSettings = Field(default_factory=CacheSettings)


class RateLimit(_ConfigModel):
    requests_per_second: float = Field(gt=0)


class RestConfig(_ConfigModel):
    base_url: str
    headers: dict[str, str] = Field(default_factory=dict)
    accept: str = "application/json"
    content_type: str = "application/json"
    test_on_connect: bool = True
    health_endpoint: str = "/health"
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    rate_limit: RateLimit | None = None
    auth: AuthConfig | None = None
    verify_tls: bool = True
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("auth")
    @classmethod
    def _rest_auth_types(cls, value: AuthConfig | None) -> AuthConfig | None:
        if value is not None and value.type not in {"basic", "bearer", "apiKey", "oauth2", "custom"}:
            raise ValueError(f"auth type '{value.type}' is not supported for REST")
        return value


class SoapConfig(_ConfigModel):
    wsdl_url: str
    soap12: bool = False
    endpoint: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    auth: AuthConfig | None = None
    verify_tls: bool = True
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("auth")
    @classmethod
    def _soap_auth_types(cls, value: AuthConfig | None) -> AuthConfig | None:
        if value is not None and value.type not in {"basic", "bearer", "wss", "clientCert"}:
            raise ValueError(f"auth type '{value.type}' is not supported for SOAP")
        return value


FILE_TYPES = ("json", "xml", "csv", "tsv")


class FileConfig(_ConfigModel):
    source: str
    type: str
    csv_headers: bool = True
    delimiter: str | None = None
    trim: bool = True
    dynamic_typing: bool = False
    encoding: str = "utf-8"
    json_path: str | None = None
    xpath: str | None = None
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().lower()


HandlerConfig = RelationalConfig | ForgeConfig | RestConfig | SoapConfig | FileConfig


class DataSourceConfig(BaseModel):
    """A named data source as stored by the surrounding application."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str | None = None
    name: str
    kind: str
    config: dict[str, Any] = Field(default_factory=dict)
    cache_enabled: bool | None = None
    cache_ttl: float | None = None
    timeout: int | None = None
    headers: dict[str, str] | None = None
    auth_config: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_source_type(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "kind" not in data and "sourceType" in data:
            data = dict(data)
            data["kind"] = data.pop("sourceType")
        return data

    @property
    def connection_id(self) -> str:
        return self.id or self.name


class ManagerSettings(BaseModel):
    """Shape of the connection manager configuration file."""

    idle_timeout_ms: int = Field(default=DEFAULT_IDLE_TIMEOUT_MS, ge=0)
    data_sources: list[DataSourceConfig] = Field(default_factory=list)


def load_config(path: Path | None = None) -> ManagerSettings:
    """Load settings from disk; fall back to defaults if missing or unreadable."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return ManagerSettings()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(path or CONFIG_FILE)})
        return ManagerSettings()
    return ManagerSettings(**data)


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    idle_timeout = raw.get("idle_timeout_ms")
    if isinstance(idle_timeout, int) and not isinstance(idle_timeout, bool):
        data["idle_timeout_ms"] = idle_timeout
    sources = raw.get("data_sources")
    if isinstance(sources, list):
        parsed: list[DataSourceConfig] = []
        for source in sources:
            if not isinstance(source, dict):
                continue
            if not isinstance(source.get("name"), str):
                continue
            if not isinstance(source.get("kind", source.get("sourceType")), str):
                continue
            try:
                parsed.append(DataSourceConfig.model_validate(source))
            except ValidationError:
                LOG.warning("Skipping invalid data source", extra={"data_source": source.get("name")})
        data["data_sources"] = parsed
    return data


__all__ = [
    "AuthConfig",
    "CONFIG_FILE",
    "CacheSettings",
    "DataSourceConfig",
    "FILE_TYPES",
    "FileConfig",
    "ForgeConfig",
    "ForgePermissions",
    "HandlerConfig",
    "ManagerSettings",
    "RateLimit",
    "RelationalConfig",
    "RestConfig",
    "SoapConfig",
    "load_config",
]
