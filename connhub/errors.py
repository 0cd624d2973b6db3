"""Error taxonomy shared by the registry, the factory and every handler."""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable


class ErrorKind(str, Enum):
    """Closed set of failure categories surfaced to callers."""

    DUPLICATE_ID = "DUPLICATE_ID"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN_KIND = "UNKNOWN_KIND"
    INVALID_CONFIG = "INVALID_CONFIG"
    NOT_CONNECTED = "NOT_CONNECTED"
    CONNECT_FAILED = "CONNECT_FAILED"
    DISCONNECT_FAILED = "DISCONNECT_FAILED"
    AUTH_FAILED = "AUTH_FAILED"
    TIMEOUT = "TIMEOUT"
    BACKEND_ERROR = "BACKEND_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
    AMBIGUOUS_ENDPOINT = "AMBIGUOUS_ENDPOINT"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    UNSAFE_DELETE = "UNSAFE_DELETE"


class ConnectionManagerError(RuntimeError):
    """Raised for every failure the connection manager reports.

    ``kind`` is what callers match on. ``handler_kind`` and ``action`` say
    where the failure happened; the original exception is kept as
    ``__cause__``.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        handler_kind: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.handler_kind = handler_kind
        self.action = action

    def __str__(self) -> str:
        prefix = ":".join(part for part in (self.handler_kind, self.action) if part)
        if prefix:
            return f"[{self.kind.value}] {prefix}: {self.message}"
        return f"[{self.kind.value}] {self.message}"

    def with_context(self, *, handler_kind: str | None = None, action: str | None = None) -> ConnectionManagerError:
        """Fill in missing context without overwriting what is already set."""

        if self.handler_kind is None:
            self.handler_kind = handler_kind
        if self.action is None:
            self.action = action
        return self

    def to_dict(self) -> dict[str, object]:
        """In-band failure shape used by batch results."""

        return {
            "success": False,
            "error": self.message,
            "kind": self.kind.value,
            "handler_kind": self.handler_kind,
            "action": self.action,
        }


_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")
_BEARER = re.compile(r"(?i)(bearer|basic)\s+[A-Za-z0-9._~+/=-]+")

REDACTED = "***"


def redact(message: str, secrets: Iterable[str | None] = ()) -> str:
    """Strip credential material from a message before it is logged or raised."""

    cleaned = _URL_USERINFO.sub(lambda match: f"{match.group('scheme')}{REDACTED}@", message)
    cleaned = _BEARER.sub(lambda match: f"{match.group(1)} {REDACTED}", cleaned)
    for secret in secrets:
        if secret and len(secret) >= 3:
            cleaned = cleaned.replace(secret, REDACTED)
    return cleaned


__all__ = ["ConnectionManagerError", "ErrorKind", "REDACTED", "redact"]
