"""Authentication flows applied to outbound HTTP requests.

Every flow is an ``httpx.Auth`` that mutates the outgoing header set (or the
query string for query-located API keys) right before the request is sent.
Credential values are held privately and never logged.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Generator, Mapping

import httpx

from ..config import AuthConfig
from ..errors import ConnectionManagerError, ErrorKind

LOG = logging.getLogger(__name__)

# Refresh OAuth2 tokens slightly before the advertised expiry.
_EXPIRY_SKEW_SECONDS = 30.0


class BearerAuth(httpx.Auth):
    def __init__(self, token: str) -> None:
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request


class ApiKeyAuth(httpx.Auth):
    def __init__(self, api_key: str, *, header_name: str = "X-API-Key", location: str = "header") -> None:
        self._api_key = api_key
        self._header_name = header_name
        self._location = location

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self._location == "query":
            request.url = request.url.copy_merge_params({self._header_name: self._api_key})
        else:
            request.headers[self._header_name] = self._api_key
        yield request


class StaticHeaderAuth(httpx.Auth):
    """Custom profile: a fixed map of headers added to every request."""

    def __init__(self, headers: Mapping[str, str]) -> None:
        self._headers = dict(headers)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers.update(self._headers)
        yield request


class OAuth2ClientCredentialsAuth(httpx.Auth):
    """Client-credentials grant with token reuse until expiry and one retry on 401."""

    requires_response_body = True

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        scope: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0

    @property
    def token_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if not self.token_valid:
            token_response = yield self._token_request()
            self._store_token(token_response)
        request.headers["Authorization"] = f"Bearer {self._token}"
        response = yield request
        if response.status_code == 401:
            token_response = yield self._token_request()
            self._store_token(token_response)
            request.headers["Authorization"] = f"Bearer {self._token}"
            yield request

    def _token_request(self) -> httpx.Request:
        form = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if self._scope:
            form["scope"] = self._scope
        return httpx.Request("POST", self._token_url, data=form)

    def _store_token(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED,
                f"token endpoint returned HTTP {response.status_code}",
                action="authenticate",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED, "token endpoint returned a non-JSON body", action="authenticate"
            ) from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise ConnectionManagerError(
                ErrorKind.AUTH_FAILED, "token endpoint response has no access_token", action="authenticate"
            )
        expires_in = payload.get("expires_in") or 3600
        self._token = str(token)
        self._expires_at = self._clock() + max(float(expires_in) - _EXPIRY_SKEW_SECONDS, 0.0)
        LOG.debug("Obtained OAuth2 access token", extra={"token_url": self._token_url})


def build_auth(auth: AuthConfig | None, *, clock: Callable[[], float] = time.monotonic) -> httpx.Auth | None:
    """Translate an auth profile into an httpx flow.

    ``wss`` and ``clientCert`` are not header flows; the SOAP handler applies
    them to the envelope and the transport respectively.
    """

    if auth is None:
        return None
    if auth.type == "basic":
        return httpx.BasicAuth(auth.username or "", auth.password or "")
    if auth.type == "bearer":
        return BearerAuth(auth.token or "")
    if auth.type == "apiKey":
        return ApiKeyAuth(auth.api_key or "", header_name=auth.header_name, location=auth.location)
    if auth.type == "oauth2":
        return OAuth2ClientCredentialsAuth(
            auth.token_url or "",
            auth.client_id or "",
            auth.client_secret or "",
            scope=auth.scope,
            clock=clock,
        )
    if auth.type == "custom":
        return StaticHeaderAuth(auth.headers)
    return None


__all__ = [
    "ApiKeyAuth",
    "BearerAuth",
    "OAuth2ClientCredentialsAuth",
    "StaticHeaderAuth",
    "build_auth",
]
