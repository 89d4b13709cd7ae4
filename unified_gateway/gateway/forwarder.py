from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from unified_gateway.catalog import ModelCatalogCache
from unified_gateway.config import Endpoint
from unified_gateway.errors import NotFoundError, UpstreamError
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.gateway.upstream import (
    endpoint_url,
    request_error_details,
    upstream_headers,
)
from unified_gateway.registry import EndpointRegistry

logger = logging.getLogger("uvicorn.error")

ROUTING_HINT_FIELDS = frozenset({"endpointId"})
# Rendering-only message fields added by chat clients; upstream APIs reject them.
TRANSPORT_ONLY_MESSAGE_FIELDS = frozenset({"html"})
UNPARSABLE_ERROR_BODY = {"error": "Failed to parse error response"}
EVENT_STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def prepare_chat_payload(body: dict[str, Any]) -> dict[str, Any]:
    payload = {
        key: value for key, value in body.items() if key not in ROUTING_HINT_FIELDS
    }
    messages = payload.get("messages")
    if isinstance(messages, list):
        payload["messages"] = [
            (
                {
                    key: value
                    for key, value in message.items()
                    if key not in TRANSPORT_ONLY_MESSAGE_FIELDS
                }
                if isinstance(message, dict)
                else message
            )
            for message in messages
        ]
    return payload


class RequestForwarder:
    """Forwards one inbound request to a single upstream endpoint.

    One upstream call per inbound request; nothing is retried.
    """

    def __init__(
        self,
        *,
        registry: EndpointRegistry,
        catalog: ModelCatalogCache,
        token_resolver: TokenResolver,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._token_resolver = token_resolver
        self._client_getter = client_getter

    async def proxy_models(self, endpoint_id: str | None = None) -> dict[str, Any]:
        return {"object": "list", "data": await self._catalog.get(endpoint_id)}

    async def proxy_chat_completion(
        self, endpoint_id: str | None, body: dict[str, Any]
    ) -> Response:
        endpoint = await self._registry.resolve_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("No endpoint configured")
        return await self.forward_chat(endpoint, prepare_chat_payload(body))

    async def forward_chat(
        self,
        endpoint: Endpoint,
        payload: dict[str, Any],
        *,
        response_model: str | None = None,
    ) -> Response:
        """POST ``payload`` to the endpoint's chat/completions route.

        ``response_model`` replaces the echoed ``model`` of a successful
        non-streaming reply.
        """
        token = await self._token_resolver.resolve(endpoint)
        stream = bool(payload.get("stream"))
        client = self._client_getter()
        url = endpoint_url(endpoint, "/chat/completions")
        request = client.build_request(
            method="POST",
            url=url,
            json=payload,
            headers=upstream_headers(token),
        )
        logger.info(
            "chat_forward endpoint=%s url=%s model=%s stream=%s",
            endpoint.name,
            url,
            payload.get("model"),
            stream,
        )
        try:
            upstream = await client.send(request, stream=stream)
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            logger.warning(
                "chat_request_error endpoint=%s error_type=%s error=%s",
                endpoint.name,
                details["error_type"],
                details["error"],
            )
            raise UpstreamError(
                f"Could not reach '{endpoint.name}' "
                f"({details['error_type']}): {details['error']}"
            ) from exc

        if not upstream.is_success:
            return await self._error_response(endpoint, upstream)
        if stream:
            return self._stream_response(endpoint, upstream)
        return await self._json_response(endpoint, upstream, response_model)

    async def _error_response(
        self, endpoint: Endpoint, upstream: httpx.Response
    ) -> JSONResponse:
        body = await _read_body(endpoint, upstream)
        try:
            content = json.loads(body)
        except ValueError:
            content = dict(UNPARSABLE_ERROR_BODY)
        logger.warning(
            "chat_upstream_error endpoint=%s status=%d",
            endpoint.name,
            upstream.status_code,
        )
        return JSONResponse(status_code=upstream.status_code, content=content)

    async def _json_response(
        self,
        endpoint: Endpoint,
        upstream: httpx.Response,
        response_model: str | None,
    ) -> JSONResponse:
        body = await _read_body(endpoint, upstream)
        try:
            content = json.loads(body)
        except ValueError as exc:
            raise UpstreamError(
                f"Upstream '{endpoint.name}' returned an invalid JSON body."
            ) from exc
        if response_model and isinstance(content, dict) and content.get("model"):
            content["model"] = response_model
        return JSONResponse(status_code=upstream.status_code, content=content)

    def _stream_response(
        self, endpoint: Endpoint, upstream: httpx.Response
    ) -> StreamingResponse:
        async def relay() -> AsyncIterator[bytes]:
            relayed_chunks = 0
            try:
                async for chunk in upstream.aiter_bytes():
                    relayed_chunks += 1
                    yield chunk
            except httpx.RequestError as exc:
                # The stream just ends; callers read a truncated body.
                logger.warning(
                    "chat_stream_error endpoint=%s chunks=%d error=%s",
                    endpoint.name,
                    relayed_chunks,
                    exc,
                )
            except (asyncio.CancelledError, GeneratorExit):
                logger.info(
                    "chat_stream_cancelled endpoint=%s chunks=%d",
                    endpoint.name,
                    relayed_chunks,
                )
                raise
            finally:
                await upstream.aclose()

        logger.info("chat_stream_start endpoint=%s", endpoint.name)
        return StreamingResponse(
            content=relay(),
            status_code=upstream.status_code,
            headers=dict(EVENT_STREAM_HEADERS),
            media_type="text/event-stream",
        )


async def _read_body(endpoint: Endpoint, upstream: httpx.Response) -> bytes:
    try:
        return await upstream.aread()
    except httpx.RequestError as exc:
        raise UpstreamError(
            f"Connection to '{endpoint.name}' failed while reading the response: {exc}"
        ) from exc
    finally:
        await upstream.aclose()
