"""Bearer token resolution for upstream endpoints.

Each auth type maps to a strategy exposing ``async resolve(endpoint)``.
OAuth2 client-credentials tokens live in an in-memory :class:`TokenCache`
that is never persisted; a restart always forces a fresh grant.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from unified_gateway.config import Endpoint
from unified_gateway.errors import AuthError

logger = logging.getLogger("uvicorn.error")

DEFAULT_REFRESH_SKEW_SECONDS = 300
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(slots=True)
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    def __init__(self) -> None:
        self._entries: dict[str, CachedToken] = {}

    def get(self, endpoint_id: str) -> CachedToken | None:
        return self._entries.get(endpoint_id)

    def put(self, endpoint_id: str, token: str, expires_at: float) -> CachedToken:
        entry = CachedToken(token=token, expires_at=expires_at)
        self._entries[endpoint_id] = entry
        return entry

    def invalidate(self, endpoint_id: str) -> None:
        if self._entries.pop(endpoint_id, None) is not None:
            logger.info("oauth_token_invalidated endpoint_id=%s", endpoint_id)

    def __contains__(self, endpoint_id: object) -> bool:
        return endpoint_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CredentialStrategy(Protocol):
    async def resolve(self, endpoint: Endpoint) -> str | None: ...


class ApiKeyCredentials:
    async def resolve(self, endpoint: Endpoint) -> str | None:
        return endpoint.api_key


class ClientCredentialsGrant:
    """OAuth2 client-credentials grant with a cached, skew-aware token.

    There is no single-flight guard: concurrent callers that all see a stale
    entry each request a token, and the last response wins the cache slot.
    """

    def __init__(
        self,
        *,
        cache: TokenCache,
        client_getter: Callable[[], httpx.AsyncClient],
        clock: Callable[[], float] = time.time,
        refresh_skew_seconds: float = DEFAULT_REFRESH_SKEW_SECONDS,
        default_expires_in_seconds: float = DEFAULT_EXPIRES_IN_SECONDS,
    ) -> None:
        self._cache = cache
        self._client_getter = client_getter
        self._clock = clock
        self._refresh_skew_seconds = refresh_skew_seconds
        self._default_expires_in_seconds = default_expires_in_seconds

    async def resolve(self, endpoint: Endpoint) -> str | None:
        now = self._clock()
        cached = self._cache.get(endpoint.id)
        if cached is not None and cached.expires_at > now + self._refresh_skew_seconds:
            return cached.token
        return await self._request_token(endpoint, now)

    async def _request_token(self, endpoint: Endpoint, now: float) -> str:
        if not endpoint.token_url:
            raise AuthError(
                f"OAuth token URL is not configured for endpoint '{endpoint.name}'."
            )

        form: dict[str, str] = {"grant_type": "client_credentials"}
        if endpoint.client_id is not None:
            form["client_id"] = endpoint.client_id
        if endpoint.client_secret is not None:
            form["client_secret"] = endpoint.client_secret
        if endpoint.scope:
            form["scope"] = endpoint.scope

        logger.info(
            "oauth_refresh_start endpoint=%s token_url=%s",
            endpoint.name,
            endpoint.token_url,
        )
        try:
            response = await self._client_getter().post(
                endpoint.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_refresh_error endpoint=%s reason=request_error error=%s",
                endpoint.name,
                exc,
            )
            raise AuthError(
                f"OAuth token endpoint unreachable for '{endpoint.name}': "
                f"{exc.__class__.__name__}: {exc}"
            ) from exc

        if not response.is_success:
            logger.warning(
                "oauth_refresh_error endpoint=%s status=%d",
                endpoint.name,
                response.status_code,
            )
            raise AuthError(
                f"OAuth Failed: {response.status_code} {response.text}",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthError(
                f"OAuth token response for '{endpoint.name}' is not valid JSON.",
                upstream_status=response.status_code,
                upstream_body=response.text,
            ) from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthError(
                f"OAuth token response for '{endpoint.name}' has no access_token.",
                upstream_status=response.status_code,
                upstream_body=response.text,
            )

        expires_in = self._expires_in(body)
        entry = self._cache.put(endpoint.id, str(access_token), now + expires_in)
        logger.info(
            "oauth_refresh_success endpoint=%s expires_in=%s expires_at=%.0f",
            endpoint.name,
            expires_in,
            entry.expires_at,
        )
        return entry.token

    def _expires_in(self, body: dict[str, Any]) -> float:
        raw = body.get("expires_in")
        if not raw:
            return self._default_expires_in_seconds
        try:
            return float(raw)
        except (TypeError, ValueError):
            return self._default_expires_in_seconds


class TokenResolver:
    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        cache: TokenCache | None = None,
        clock: Callable[[], float] = time.time,
        refresh_skew_seconds: float = DEFAULT_REFRESH_SKEW_SECONDS,
        default_expires_in_seconds: float = DEFAULT_EXPIRES_IN_SECONDS,
    ) -> None:
        self.cache = cache if cache is not None else TokenCache()
        self._strategies: dict[str, CredentialStrategy] = {
            "api-key": ApiKeyCredentials(),
            "oauth2": ClientCredentialsGrant(
                cache=self.cache,
                client_getter=client_getter,
                clock=clock,
                refresh_skew_seconds=refresh_skew_seconds,
                default_expires_in_seconds=default_expires_in_seconds,
            ),
        }

    def strategy_for(self, endpoint: Endpoint) -> CredentialStrategy:
        return self._strategies.get(endpoint.auth_type, self._strategies["api-key"])

    async def resolve(self, endpoint: Endpoint) -> str | None:
        return await self.strategy_for(endpoint).resolve(endpoint)

    def invalidate(self, endpoint_id: str) -> None:
        self.cache.invalidate(endpoint_id)
