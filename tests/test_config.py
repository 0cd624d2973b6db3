"""Tests for configuration models and the config file loader."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from connhub import config as config_module
from connhub.config import (
    AuthConfig,
    DataSourceConfig,
    FileConfig,
    ManagerSettings,
    RelationalConfig,
    RestConfig,
    SoapConfig,
    load_config,
)


def test_relational_config_accepts_camel_case_and_defaults() -> None:
    config = RelationalConfig.model_validate(
        {"host": "db", "database": "app", "user": "svc", "password": "pw", "poolSize": 4}
    )

    assert config.pool_size == 4
    assert config.port == 5432
    assert config.connect_timeout_ms == 5000
    assert config.cache.ttl_seconds == 300


def test_relational_config_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        RelationalConfig.model_validate(
            {"host": "db", "database": "app", "user": "svc", "password": "pw", "poolSzie": 4}
        )


def test_auth_requires_fields_per_type() -> None:
    with pytest.raises(ValidationError, match="requires: password"):
        AuthConfig(type="basic", username="svc")
    with pytest.raises(ValidationError, match="client_secret"):
        AuthConfig.model_validate({"type": "oauth2", "tokenUrl": "https://idp/token", "clientId": "c"})


def test_api_key_location_uses_in_alias() -> None:
    auth = AuthConfig.model_validate({"type": "apiKey", "apiKey": "k-123", "in": "query"})

    assert auth.location == "query"
    assert auth.header_name == "X-API-Key"
    assert auth.secrets() == ("k-123",)


def test_rest_and_soap_restrict_auth_types() -> None:
    with pytest.raises(ValidationError, match="not supported for REST"):
        RestConfig.model_validate({"baseUrl": "https://api", "auth": {"type": "wss", "username": "u", "password": "p"}})
    with pytest.raises(ValidationError, match="not supported for SOAP"):
        SoapConfig.model_validate({"wsdlUrl": "https://svc?wsdl", "auth": {"type": "apiKey", "apiKey": "k"}})


def test_file_type_is_normalized() -> None:
    config = FileConfig.model_validate({"source": "data.csv", "type": " CSV "})

    assert config.type == "csv"
    assert config.csv_headers is True
    assert config.dynamic_typing is False


def test_data_source_accepts_source_type_and_defaults_id_to_name() -> None:
    source = DataSourceConfig.model_validate(
        {"name": "orders", "sourceType": "postgres", "config": {}, "cacheTtl": 10, "unrelated": True}
    )

    assert source.kind == "postgres"
    assert source.connection_id == "orders"
    assert source.cache_ttl == 10


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    assert load_config() == ManagerSettings()


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
idle_timeout_ms = 60000

[[data_sources]]
name = "catalog"
kind = "json"
cacheTtl = 30

[data_sources.config]
source = "catalog.json"

[[data_sources]]
name = "broken"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.idle_timeout_ms == 60000
    assert [source.name for source in result.data_sources] == ["catalog"]
    assert result.data_sources[0].config == {"source": "catalog.json"}


def test_load_config_falls_back_on_invalid_toml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("idle_timeout_ms = = 1")

    assert load_config(config_path) == ManagerSettings()
