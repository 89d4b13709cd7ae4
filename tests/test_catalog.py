from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from unified_gateway.catalog import (
    ModelCatalogCache,
    filter_chat_models,
    is_chat_model,
    normalize_model_records,
)
from unified_gateway.config import EndpointUpsert
from unified_gateway.errors import NotFoundError
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.registry import EndpointRegistry
from unified_gateway.utils.persistence import FileStore

MIXED_MODELS = [
    {"id": "gpt-4o"},
    {"id": "text-embedding-3-small"},
    {"id": "whisper-1"},
    {"id": "tts-1-hd"},
    {"id": "dall-e-3"},
    {"id": "omni-moderation-latest"},
    {"id": "gpt-4o-realtime-preview"},
    {"id": "gpt-4o-audio-preview"},
    {"id": "llama-3.1-70b"},
]


def test_filter_keeps_only_chat_capable_models() -> None:
    kept = filter_chat_models(MIXED_MODELS)
    assert [item["id"] for item in kept] == ["gpt-4o", "llama-3.1-70b"]


def test_filter_keeps_slashed_chat_ids() -> None:
    records = [
        {"id": "gpt-4"},
        {"id": "text-embedding-3"},
        {"id": "whisper-1"},
        {"id": "gpt-4/whatever"},
    ]
    kept = filter_chat_models(records)
    assert [item["id"] for item in kept] == ["gpt-4", "gpt-4/whatever"]


def test_filter_is_case_insensitive_and_drops_records_without_id() -> None:
    kept = filter_chat_models(
        [{"id": "Text-EMBEDDING-ada"}, {"object": "model"}, {"id": ""}, {"id": "ok"}]
    )
    assert kept == [{"id": "ok"}]


def test_filter_is_idempotent() -> None:
    once = filter_chat_models(MIXED_MODELS)
    assert filter_chat_models(once) == once


def test_is_chat_model_markers() -> None:
    assert is_chat_model("claude-3-5-sonnet")
    assert not is_chat_model("nomic-embed-text")


def test_normalize_promotes_model_field_to_id() -> None:
    records = [{"model": "llama3:8b", "size": 1}, {"id": "a", "model": "b"}]

    normalized = normalize_model_records(records)

    assert normalized == [
        {"model": "llama3:8b", "size": 1, "id": "llama3:8b"},
        {"id": "a", "model": "b"},
    ]
    assert "id" not in records[0]


class _ModelsUpstream:
    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls.append(host)
        outcome = self.responses[host]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json={"object": "list", "data": outcome})


async def _seed(registry: EndpointRegistry, *endpoints: dict[str, Any]) -> None:
    for endpoint in endpoints:
        await registry.upsert(EndpointUpsert.model_validate(endpoint))


def _run_with_catalog(
    tmp_path: Path,
    upstream: _ModelsUpstream,
    endpoints: list[dict[str, Any]],
    action: Any,
) -> Any:
    async def _run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
            registry = EndpointRegistry(FileStore(tmp_path / "config.json"))
            await _seed(registry, *endpoints)
            catalog = ModelCatalogCache(
                FileStore(tmp_path / "models.json"),
                registry=registry,
                token_resolver=TokenResolver(client_getter=lambda: client),
                client_getter=lambda: client,
            )
            return await action(catalog)

    return asyncio.run(_run())


def _read_cache(tmp_path: Path) -> dict[str, Any]:
    return json.loads((tmp_path / "models.json").read_text(encoding="utf-8"))


def test_get_fetches_once_then_serves_from_cache(tmp_path: Path) -> None:
    upstream = _ModelsUpstream({"groq.test": MIXED_MODELS})
    endpoints = [{"id": "g", "name": "Groq", "baseUrl": "http://groq.test/v1"}]

    async def _action(catalog: ModelCatalogCache) -> Any:
        first = await catalog.get("g")
        second = await catalog.get()
        return first, second

    first, second = _run_with_catalog(tmp_path, upstream, endpoints, _action)

    assert [item["id"] for item in first] == ["gpt-4o", "llama-3.1-70b"]
    assert second == first
    assert upstream.calls == ["groq.test"]
    assert _read_cache(tmp_path) == {"g": first}


def test_get_without_endpoints_is_not_found(tmp_path: Path) -> None:
    upstream = _ModelsUpstream({})

    async def _action(catalog: ModelCatalogCache) -> Any:
        return await catalog.get()

    with pytest.raises(NotFoundError):
        _run_with_catalog(tmp_path, upstream, [], _action)


def test_refresh_all_reports_per_endpoint_outcome(tmp_path: Path) -> None:
    (tmp_path / "models.json").write_text(
        json.dumps({"b": [{"id": "stale-b"}], "a": [{"id": "stale-a"}]}),
        encoding="utf-8",
    )
    upstream = _ModelsUpstream(
        {
            "a.test": [{"id": "model-a"}, {"id": "embed-a"}],
            "b.test": httpx.Response(500, text="boom"),
        }
    )
    endpoints = [
        {"id": "a", "name": "A", "baseUrl": "http://a.test/v1"},
        {"id": "b", "name": "B", "baseUrl": "http://b.test/v1"},
    ]

    async def _action(catalog: ModelCatalogCache) -> Any:
        return await catalog.refresh_all()

    results = _run_with_catalog(tmp_path, upstream, endpoints, _action)

    assert list(results) == ["A", "B"]
    assert results["A"] == "Success"
    assert results["B"].startswith("Failed: ")
    assert "500" in results["B"]
    cache = _read_cache(tmp_path)
    assert cache["a"] == [{"id": "model-a"}]
    assert cache["b"] == [{"id": "stale-b"}]


def test_refresh_all_survives_unreachable_endpoint(tmp_path: Path) -> None:
    upstream = _ModelsUpstream(
        {
            "a.test": [{"id": "model-a"}],
            "down.test": httpx.ConnectError("connection refused"),
        }
    )
    endpoints = [
        {"id": "a", "name": "A", "baseUrl": "http://a.test/v1"},
        {"id": "d", "name": "Down", "baseUrl": "http://down.test/v1"},
    ]

    async def _action(catalog: ModelCatalogCache) -> Any:
        return await catalog.refresh_all()

    results = _run_with_catalog(tmp_path, upstream, endpoints, _action)

    assert results["A"] == "Success"
    assert results["Down"].startswith("Failed: ")
    assert "d" not in _read_cache(tmp_path)
