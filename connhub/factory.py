"""Kind resolution and handler construction."""

from __future__ import annotations

import functools
import logging
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from .config import FILE_TYPES
from .errors import ConnectionManagerError, ErrorKind
from .handlers import FileHandler, ForgeHandler, RelationalHandler, RestHandler, SoapHandler
from .handlers.base import ConnectionHandler, HandlerConstructor, format_validation_error
from .models import ValidationOutcome

LOG = logging.getLogger(__name__)

KIND_ALIASES: Mapping[str, str] = {
    "relational": "relational",
    "postgresql": "relational",
    "postgres": "relational",
    "pg": "relational",
    "forge": "forge",
    "rest": "rest",
    "http": "rest",
    "https": "rest",
    "soap": "soap",
    "file": "file",
    "json": "file",
    "xml": "file",
    "csv": "file",
    "tsv": "file",
}

DEFAULT_CONSTRUCTORS: Mapping[str, HandlerConstructor] = {
    "relational": RelationalHandler,
    "forge": ForgeHandler,
    "rest": RestHandler,
    "soap": SoapHandler,
    "file": FileHandler,
}


def _config_model(ctor: HandlerConstructor) -> type[BaseModel] | None:
    while isinstance(ctor, functools.partial):
        ctor = ctor.func
    return getattr(ctor, "config_model", None)


class HandlerFactory:
    """Maps kind strings, including aliases, onto handler constructors."""

    def __init__(self, constructors: Mapping[str, HandlerConstructor] | None = None) -> None:
        self._aliases = dict(KIND_ALIASES)
        self._constructors = dict(DEFAULT_CONSTRUCTORS if constructors is None else constructors)

    def canonical_kind(self, kind: str) -> str:
        key = str(kind).strip().lower()
        canonical = self._aliases.get(key)
        if canonical is None or canonical not in self._constructors:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_KIND, f"unknown connection kind '{kind}'")
        return canonical

    def resolve(self, kind: str) -> HandlerConstructor:
        return self._constructors[self.canonical_kind(kind)]

    def register(self, kind: str, ctor: HandlerConstructor) -> None:
        """Install or override the constructor for ``kind``; the latest registration wins."""

        key = str(kind).strip().lower()
        canonical = self._aliases.setdefault(key, key)
        replaced = canonical in self._constructors
        self._constructors[canonical] = ctor
        LOG.info("Registered handler", extra={"kind": canonical, "replaced": replaced})

    def kinds(self) -> tuple[str, ...]:
        return tuple(self._constructors)

    def config_model(self, kind: str) -> type[BaseModel] | None:
        return _config_model(self.resolve(kind))

    def prepare_config(self, kind: str, config: BaseModel | Mapping[str, Any]) -> BaseModel | Mapping[str, Any]:
        """Let a file alias such as ``csv`` supply the file ``type`` when the config omits it."""

        key = str(kind).strip().lower()
        if key in FILE_TYPES and isinstance(config, Mapping) and "type" not in config:
            return {**config, "type": key}
        return config

    def validate_config(self, kind: str, config: BaseModel | Mapping[str, Any]) -> ValidationOutcome:
        """Check ``config`` against the kind's model without constructing or connecting anything."""

        try:
            ctor = self.resolve(kind)
        except ConnectionManagerError as exc:
            return ValidationOutcome(valid=False, error=exc.message)
        model = _config_model(ctor)
        if model is None:
            # constructors without a declared model are validated when built
            return ValidationOutcome(valid=True)
        config = self.prepare_config(kind, config)
        if isinstance(config, BaseModel) and not isinstance(config, model):
            config = config.model_dump(by_alias=True)
        try:
            parsed = config if isinstance(config, model) else model.model_validate(config)
        except ValidationError as exc:
            return ValidationOutcome(valid=False, error=format_validation_error(exc))
        file_type = getattr(parsed, "type", None) if self.canonical_kind(kind) == "file" else None
        if file_type is not None and file_type not in FILE_TYPES:
            return ValidationOutcome(valid=False, error=f"file type '{file_type}' is not supported")
        return ValidationOutcome(valid=True)

    def build(self, kind: str, config: BaseModel | Mapping[str, Any]) -> tuple[str, ConnectionHandler]:
        """Resolve ``kind`` and construct an unconnected handler; returns ``(canonical_kind, handler)``."""

        canonical = self.canonical_kind(kind)
        handler = self._constructors[canonical](self.prepare_config(kind, config))
        return canonical, handler


__all__ = ["DEFAULT_CONSTRUCTORS", "HandlerFactory", "KIND_ALIASES"]
