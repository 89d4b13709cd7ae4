"""Durable endpoint registry.

Every operation reads the whole config document, mutates it and writes it
back. Nothing is held in memory between calls and there is no write lock, so
two concurrent mutations race and the last writer wins. The gateway targets a
single local operator, which makes that acceptable.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Callable

from unified_gateway.config import (
    DEFAULT_AUTH_TYPE,
    Endpoint,
    EndpointUpsert,
    GatewayConfig,
)
from unified_gateway.errors import ConfigError, ValidationError
from unified_gateway.gateway.tokens import TokenCache
from unified_gateway.utils.persistence import FileStore

logger = logging.getLogger("uvicorn.error")

UPDATABLE_FIELDS = (
    "name",
    "base_url",
    "auth_type",
    "api_key",
    "token_url",
    "client_id",
    "client_secret",
    "scope",
)
REQUIRED_FIELDS = {"name", "base_url"}
SECRET_FIELDS = {"api_key", "client_secret"}
CREDENTIAL_FIELDS = ("token_url", "client_id", "client_secret")


def generate_unified_api_key() -> str:
    return "ag-" + secrets.token_urlsafe(24)


class EndpointRegistry:
    def __init__(
        self,
        store: FileStore,
        *,
        token_cache: TokenCache | None = None,
        key_factory: Callable[[], str] = generate_unified_api_key,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._token_cache = token_cache
        self._key_factory = key_factory
        self._clock = clock

    async def load(self) -> GatewayConfig:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, config: GatewayConfig) -> None:
        await asyncio.to_thread(self._save_sync, config)

    def _load_sync(self) -> GatewayConfig:
        try:
            raw = self.store.load(default=None)
        except ConfigError as exc:
            logger.warning("config_load_failed path=%s error=%s", self.store.path, exc)
            return GatewayConfig()
        if not isinstance(raw, dict):
            return GatewayConfig()
        config = GatewayConfig.from_document(raw)
        if config.unparsed_endpoints:
            logger.warning(
                "config_endpoints_invalid path=%s count=%d",
                self.store.path,
                len(config.unparsed_endpoints),
            )

        if not config.unified_api_key:
            config.unified_api_key = self._key_factory()
            self._save_sync(config)
            logger.info("unified_api_key_generated path=%s", self.store.path)
        return config

    def _save_sync(self, config: GatewayConfig) -> None:
        self.store.write(config.to_document())

    async def list_endpoints(self) -> dict[str, Any]:
        config = await self.load()
        return {
            "endpoints": [endpoint.masked() for endpoint in config.endpoints],
            "currentEndpointId": config.current_endpoint_id,
        }

    @staticmethod
    def resolve(
        config: GatewayConfig, endpoint_id: str | None = None
    ) -> Endpoint | None:
        if endpoint_id:
            return config.find(endpoint_id)
        current = config.find(config.current_endpoint_id)
        if current is not None:
            return current
        return config.endpoints[0] if config.endpoints else None

    async def resolve_endpoint(self, endpoint_id: str | None = None) -> Endpoint | None:
        return self.resolve(await self.load(), endpoint_id)

    async def unified_api_key(self) -> str | None:
        return (await self.load()).unified_api_key

    async def upsert(self, update: EndpointUpsert) -> Endpoint:
        config = await self.load()
        existing = config.find(update.id)
        if existing is None:
            endpoint = self._create(config, update)
        else:
            endpoint = self._merge(existing, update)
            index = config.endpoints.index(existing)
            config.endpoints[index] = endpoint
            if self._token_cache is not None and _credentials_changed(
                existing, endpoint
            ):
                self._token_cache.invalidate(endpoint.id)
        await self.save(config)
        logger.info(
            "endpoint_saved id=%s name=%s created=%s",
            endpoint.id,
            endpoint.name,
            existing is None,
        )
        return endpoint

    async def delete(self, endpoint_id: str) -> None:
        config = await self.load()
        config.remove(endpoint_id)
        if self._token_cache is not None:
            self._token_cache.invalidate(endpoint_id)
        if config.current_endpoint_id == endpoint_id:
            config.current_endpoint_id = (
                config.endpoints[0].id if config.endpoints else None
            )
        await self.save(config)
        logger.info(
            "endpoint_deleted id=%s current=%s",
            endpoint_id,
            config.current_endpoint_id,
        )

    async def select_current(self, endpoint_id: str | None) -> None:
        config = await self.load()
        config.current_endpoint_id = endpoint_id
        await self.save(config)

    def _create(self, config: GatewayConfig, update: EndpointUpsert) -> Endpoint:
        name = (update.name or "").strip()
        base_url = (update.base_url or "").strip()
        if not name or not base_url:
            raise ValidationError("Endpoint 'name' and 'baseUrl' are required.")

        endpoint_id = update.id or self._next_id(config)
        # A valid record replaces an unreadable one stored under the same id.
        config.remove(endpoint_id)
        endpoint = Endpoint(
            id=endpoint_id,
            name=name,
            base_url=base_url,
            auth_type=update.auth_type or DEFAULT_AUTH_TYPE,
            api_key=update.api_key or None,
            token_url=update.token_url or None,
            client_id=update.client_id or None,
            client_secret=update.client_secret or None,
            scope=update.scope or None,
        )
        config.endpoints.append(endpoint)
        if len(config.endpoints) == 1:
            config.current_endpoint_id = endpoint.id
        return endpoint

    @staticmethod
    def _merge(existing: Endpoint, update: EndpointUpsert) -> Endpoint:
        changes: dict[str, Any] = {}
        for field in UPDATABLE_FIELDS:
            if field not in update.model_fields_set:
                continue
            value = getattr(update, field)
            if isinstance(value, str):
                value = value.strip()
            if field in REQUIRED_FIELDS:
                if value:
                    changes[field] = value
                continue
            if field in SECRET_FIELDS and value == "":
                continue
            if field == "auth_type":
                changes[field] = value or DEFAULT_AUTH_TYPE
                continue
            changes[field] = value or None

        if not changes:
            return existing
        return Endpoint.model_validate({**existing.model_dump(), **changes})

    def _next_id(self, config: GatewayConfig) -> str:
        candidate = int(self._clock() * 1000)
        taken = {endpoint.id for endpoint in config.endpoints}
        while str(candidate) in taken:
            candidate += 1
        return str(candidate)


def _credentials_changed(before: Endpoint, after: Endpoint) -> bool:
    return any(
        getattr(before, field) != getattr(after, field) for field in CREDENTIAL_FIELDS
    )
