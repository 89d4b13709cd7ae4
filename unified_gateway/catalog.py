"""Durable per-endpoint cache of chat-capable model descriptors.

Entries never expire on their own. A lazy fetch fills a missing entry and an
explicit :meth:`ModelCatalogCache.refresh_all` replaces every entry that could
be fetched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from unified_gateway.config import Endpoint
from unified_gateway.errors import ConfigError, NotFoundError
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.gateway.upstream import fetch_model_records
from unified_gateway.registry import EndpointRegistry
from unified_gateway.utils.persistence import FileStore

logger = logging.getLogger("uvicorn.error")

# Substrings marking models that are not usable for chat completions.
NON_CHAT_MODEL_MARKERS = (
    "embed",
    "audio",
    "tts",
    "whisper",
    "dall-e",
    "moderation",
    "realtime",
)

ModelDescriptor = dict[str, Any]


def normalize_model_records(records: list[ModelDescriptor]) -> list[ModelDescriptor]:
    normalized: list[ModelDescriptor] = []
    for record in records:
        item = dict(record)
        if not item.get("id") and item.get("model"):
            item["id"] = item["model"]
        normalized.append(item)
    return normalized


def is_chat_model(model_id: str) -> bool:
    lowered = model_id.lower()
    return not any(marker in lowered for marker in NON_CHAT_MODEL_MARKERS)


def filter_chat_models(records: list[ModelDescriptor]) -> list[ModelDescriptor]:
    return [
        record
        for record in records
        if isinstance(record.get("id"), str)
        and record["id"]
        and is_chat_model(record["id"])
    ]


class ModelCatalogCache:
    def __init__(
        self,
        store: FileStore,
        *,
        registry: EndpointRegistry,
        token_resolver: TokenResolver,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self.store = store
        self._registry = registry
        self._token_resolver = token_resolver
        self._client_getter = client_getter

    async def load(self) -> dict[str, list[ModelDescriptor]]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, cache: dict[str, list[ModelDescriptor]]) -> None:
        await asyncio.to_thread(self.store.write, cache)

    def _load_sync(self) -> dict[str, list[ModelDescriptor]]:
        try:
            raw = self.store.load(default={})
        except ConfigError as exc:
            logger.warning(
                "model_cache_load_failed path=%s error=%s", self.store.path, exc
            )
            return {}
        if not isinstance(raw, dict):
            return {}
        return {
            str(key): value for key, value in raw.items() if isinstance(value, list)
        }

    async def get(self, endpoint_id: str | None = None) -> list[ModelDescriptor]:
        config = await self._registry.load()
        endpoint = self._registry.resolve(config, endpoint_id)
        if endpoint is None:
            raise NotFoundError("No endpoint configured")

        cache = await self.load()
        cached = cache.get(endpoint.id)
        if cached:
            logger.info(
                "model_cache_hit endpoint=%s models=%d", endpoint.name, len(cached)
            )
            return cached

        logger.info("model_cache_miss endpoint=%s", endpoint.name)
        models = await self.fetch_live(endpoint)
        cache[endpoint.id] = models
        await self.save(cache)
        return models

    async def fetch_live(self, endpoint: Endpoint) -> list[ModelDescriptor]:
        token = await self._token_resolver.resolve(endpoint)
        records = await fetch_model_records(self._client_getter(), endpoint, token)
        models = filter_chat_models(normalize_model_records(records))
        logger.info(
            "model_fetch endpoint=%s received=%d kept=%d",
            endpoint.name,
            len(records),
            len(models),
        )
        return models

    async def refresh_all(self) -> dict[str, str]:
        """Refetch every endpoint's catalog; failures are reported, not raised.

        Result keys follow registry order. The cache file is written once,
        after every fetch has settled.
        """
        config = await self._registry.load()
        cache = await self.load()

        async def _refresh(
            endpoint: Endpoint,
        ) -> tuple[Endpoint, list[ModelDescriptor] | None, str]:
            try:
                models = await self.fetch_live(endpoint)
            except Exception as exc:
                logger.warning(
                    "model_refresh_failed endpoint=%s error=%s", endpoint.name, exc
                )
                return endpoint, None, f"Failed: {exc}"
            return endpoint, models, "Success"

        outcomes = await asyncio.gather(
            *(_refresh(endpoint) for endpoint in config.endpoints)
        )

        results: dict[str, str] = {}
        for endpoint, models, outcome in outcomes:
            if models is not None:
                cache[endpoint.id] = models
            results[endpoint.name] = outcome

        await self.save(cache)
        logger.info(
            "model_refresh_complete endpoints=%d failed=%d",
            len(results),
            sum(1 for outcome in results.values() if outcome != "Success"),
        )
        return results
