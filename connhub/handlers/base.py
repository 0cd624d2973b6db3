"""Abstract handler implementing the uniform connection contract."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, ClassVar, Iterator, Mapping

import httpx
from pydantic import BaseModel, ValidationError

from ..cache import CacheLayer
from ..errors import ConnectionManagerError, ErrorKind, redact
from ..models import HandlerState, HandlerTestReport

LOG = logging.getLogger(__name__)

Clock = Callable[[], float]


def format_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic error into one line naming the offending fields."""

    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


class ConnectionHandler(ABC):
    """Per-backend adapter: ``connect / disconnect / test / query / info``.

    Subclasses provide the backend specifics through ``_open``, ``_close``,
    ``_probe``, ``_execute`` and ``_describe``. This class owns the state
    machine, the cache and error translation.
    """

    kind: ClassVar[str] = "base"
    config_model: ClassVar[type[BaseModel]]

    def __init__(self, config: BaseModel | Mapping[str, Any], *, clock: Clock = time.monotonic) -> None:
        self.config = self.parse_config(config)
        self._clock = clock
        self._state = HandlerState.NEW
        self._lifecycle_lock = asyncio.Lock()
        cache_settings = getattr(self.config, "cache", None)
        if cache_settings is not None:
            self.cache = CacheLayer(
                cache_settings.ttl_seconds,
                enabled=cache_settings.enabled,
                max_entries=cache_settings.max_entries,
                clock=clock,
            )
        else:
            self.cache = CacheLayer(clock=clock)

    @classmethod
    def parse_config(cls, config: BaseModel | Mapping[str, Any]) -> Any:
        """Validate a config document into this handler's model."""

        if isinstance(config, cls.config_model):
            return config
        if isinstance(config, BaseModel):
            config = config.model_dump(by_alias=True)
        try:
            return cls.config_model.model_validate(config)
        except ValidationError as exc:
            raise ConnectionManagerError(
                ErrorKind.INVALID_CONFIG,
                format_validation_error(exc),
                handler_kind=cls.kind,
                action="configure",
            ) from exc

    @property
    def state(self) -> HandlerState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is HandlerState.CONNECTED

    async def connect(self) -> None:
        """Open the backend; a no-op when already connected."""

        async with self._lifecycle_lock:
            if self._state is HandlerState.CONNECTED:
                return
            if self._state is HandlerState.DISPOSED:
                raise ConnectionManagerError(
                    ErrorKind.NOT_CONNECTED,
                    "handler has been disposed",
                    handler_kind=self.kind,
                    action="connect",
                )
            self._state = HandlerState.CONNECTING
            try:
                with self._guard("connect", ErrorKind.CONNECT_FAILED):
                    await self._open()
            except BaseException:
                self._state = HandlerState.NEW
                raise
            self._state = HandlerState.CONNECTED
            LOG.debug("Handler connected", extra={"kind": self.kind})

    async def disconnect(self) -> None:
        """Release the backend handle; the handler cannot be reused afterwards."""

        async with self._lifecycle_lock:
            if self._state is HandlerState.DISPOSED:
                return
            # a failed connect may leave a half-built client behind
            self._state = HandlerState.DISCONNECTING
            try:
                with self._guard("disconnect", ErrorKind.DISCONNECT_FAILED):
                    await self._close()
            finally:
                self._state = HandlerState.DISPOSED
                self.cache.invalidate()

    async def test(self) -> HandlerTestReport:
        """Probe the backend and report instead of raising."""

        if not self.connected:
            return HandlerTestReport(success=False, message=f"{self.kind} handler is not connected")
        started = time.perf_counter()
        try:
            with self._guard("test"):
                details = await self._probe()
        except ConnectionManagerError as exc:
            return HandlerTestReport(
                success=False,
                message=str(exc),
                latency_ms=_elapsed_ms(started),
                details={"kind": exc.kind.value},
            )
        return HandlerTestReport(
            success=True,
            message=f"{self.kind} connection is healthy",
            latency_ms=_elapsed_ms(started),
            details=details or {},
        )

    async def query(self, request: Mapping[str, Any]) -> Any:
        """Run a backend-specific request."""

        self._ensure_connected("query")
        with self._guard("query"):
            return await self._execute(request)

    def info(self) -> dict[str, Any]:
        """Non-suspending description of the handler and its backend handle."""

        details = {"kind": self.kind, "state": self._state.value, "cache": self.cache.stats()}
        details.update(self._describe())
        return details

    def clear_cache(self, key: str | None = None) -> int:
        return self.cache.invalidate(key)

    def secrets(self) -> tuple[str, ...]:
        """Credential values that must never appear in messages."""

        return ()

    def handle_error(
        self,
        exc: BaseException,
        action: str,
        default: ErrorKind = ErrorKind.BACKEND_ERROR,
    ) -> ConnectionManagerError:
        """Attach handler context to a failure, strip secrets, and log it."""

        if isinstance(exc, ConnectionManagerError):
            error = exc.with_context(handler_kind=self.kind, action=action)
            error.message = redact(error.message, self.secrets())
            error.args = (error.message,)
        else:
            kind = default if default in _LIFECYCLE_KINDS else self._classify(exc, default)
            message = redact(f"{type(exc).__name__}: {exc}", self.secrets())
            error = ConnectionManagerError(kind, message, handler_kind=self.kind, action=action)
        LOG.warning(
            "Handler action failed",
            extra={"kind": self.kind, "action": action, "error_kind": error.kind.value},
        )
        return error

    async def _cached(self, cache_key: str | None, loader: Callable[[], Awaitable[Any]]) -> Any:
        if not cache_key:
            return await loader()
        return await self.cache.get_or_load(cache_key, loader)

    def _ensure_connected(self, action: str) -> None:
        if not self.connected:
            raise ConnectionManagerError(
                ErrorKind.NOT_CONNECTED,
                f"handler is {self._state.value}",
                handler_kind=self.kind,
                action=action,
            )

    @contextmanager
    def _guard(self, action: str, default: ErrorKind = ErrorKind.BACKEND_ERROR) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            error = self.handle_error(exc, action, default)
            if error is exc:
                raise
            raise error from exc

    @staticmethod
    def _classify(exc: BaseException, default: ErrorKind) -> ErrorKind:
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return ErrorKind.TIMEOUT
        if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in (401, 403):
            return ErrorKind.AUTH_FAILED
        return default

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...

    @abstractmethod
    async def _probe(self) -> Mapping[str, Any] | None: ...

    @abstractmethod
    async def _execute(self, request: Mapping[str, Any]) -> Any: ...

    def _describe(self) -> Mapping[str, Any]:
        return {}


_LIFECYCLE_KINDS = frozenset({ErrorKind.CONNECT_FAILED, ErrorKind.DISCONNECT_FAILED})


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


HandlerConstructor = Callable[..., ConnectionHandler]


__all__ = ["Clock", "ConnectionHandler", "HandlerConstructor", "format_validation_error"]
