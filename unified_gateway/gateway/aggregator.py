"""One OpenAI-compatible namespace over every configured endpoint.

Models are addressed as ``"<endpointName>/<modelId>"``. The endpoint name is
everything before the first ``/``; the rest is the provider's own model id,
which may itself contain slashes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import httpx
from fastapi.responses import Response

from unified_gateway.config import Endpoint
from unified_gateway.errors import NotFoundError, ValidationError
from unified_gateway.gateway.forwarder import RequestForwarder, prepare_chat_payload
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.gateway.upstream import fetch_model_records
from unified_gateway.registry import EndpointRegistry

logger = logging.getLogger("uvicorn.error")


def composite_model_id(endpoint_name: str, model_id: str) -> str:
    return f"{endpoint_name}/{model_id}"


def parse_composite_model_id(model: str) -> tuple[str, str]:
    endpoint_name, separator, real_model_id = model.partition("/")
    if not separator:
        raise ValidationError(
            'Invalid model format. Expected "EndpointName/ModelID"'
        )
    return endpoint_name, real_model_id


class UnifiedAggregator:
    def __init__(
        self,
        *,
        registry: EndpointRegistry,
        forwarder: RequestForwarder,
        token_resolver: TokenResolver,
        client_getter: Callable[[], httpx.AsyncClient],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._forwarder = forwarder
        self._token_resolver = token_resolver
        self._client_getter = client_getter
        self._clock = clock

    async def list_models(self) -> dict[str, Any]:
        """Live-fetch every endpoint's models; failing endpoints are skipped."""
        config = await self._registry.load()
        per_endpoint = await asyncio.gather(
            *(self._endpoint_models(endpoint) for endpoint in config.endpoints)
        )
        data = [model for models in per_endpoint for model in models]
        return {"object": "list", "data": data}

    async def _endpoint_models(self, endpoint: Endpoint) -> list[dict[str, Any]]:
        try:
            token = await self._token_resolver.resolve(endpoint)
            records = await fetch_model_records(self._client_getter(), endpoint, token)
        except Exception as exc:
            logger.warning(
                "unified_models_failed endpoint=%s error=%s", endpoint.name, exc
            )
            return []

        models: list[dict[str, Any]] = []
        for record in records:
            real_id = record.get("id") or record.get("model")
            if not real_id:
                continue
            models.append(
                {
                    "id": composite_model_id(endpoint.name, str(real_id)),
                    "object": "model",
                    "created": record.get("created") or int(self._clock()),
                    "owned_by": endpoint.name,
                }
            )
        logger.info(
            "unified_models_fetched endpoint=%s models=%d", endpoint.name, len(models)
        )
        return models

    async def chat_completion(self, body: dict[str, Any]) -> Response:
        model = body.get("model")
        if not model:
            raise ValidationError("Model is required")
        if not isinstance(model, str):
            raise ValidationError("Model must be a string")

        endpoint_name, real_model_id = parse_composite_model_id(model)
        config = await self._registry.load()
        endpoint = config.find_by_name(endpoint_name)
        if endpoint is None:
            raise NotFoundError(f"Endpoint '{endpoint_name}' not found")

        payload = prepare_chat_payload({**body, "model": real_model_id})
        logger.info(
            "unified_chat_route model=%s endpoint=%s upstream_model=%s",
            model,
            endpoint.name,
            real_model_id,
        )
        return await self._forwarder.forward_chat(
            endpoint, payload, response_model=model
        )
