from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError

from unified_gateway import __version__
from unified_gateway.catalog import ModelCatalogCache
from unified_gateway.config import EndpointUpsert
from unified_gateway.errors import GatewayError, ValidationError
from unified_gateway.gateway.aggregator import UnifiedAggregator
from unified_gateway.gateway.audit import JsonlEventLog
from unified_gateway.gateway.auth import UnifiedKeyAuthenticator
from unified_gateway.gateway.forwarder import RequestForwarder
from unified_gateway.gateway.tokens import TokenResolver
from unified_gateway.gateway.upstream import build_upstream_client
from unified_gateway.history import ChatHistoryStore
from unified_gateway.registry import EndpointRegistry
from unified_gateway.settings import get_settings
from unified_gateway.utils.persistence import FileStore

app = FastAPI(
    title="Unified LLM Gateway",
    description="OpenAI-compatible gateway over multiple upstream providers.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")

UNIFIED_PATH_PREFIX = "/unified"
UNLOGGED_PATHS = {"/api/logs"}


@app.middleware("http")
async def unified_auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith(UNIFIED_PATH_PREFIX):
        return await call_next(request)

    authenticator: UnifiedKeyAuthenticator | None = getattr(
        app.state, "authenticator", None
    )
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            logger.info("unified_auth_rejected path=%s", request.url.path)
            return auth_error

    return await call_next(request)


@app.middleware("http")
async def request_log_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    server_log: JsonlEventLog | None = getattr(app.state, "server_log", None)
    if server_log is not None and request.url.path not in UNLOGGED_PATHS:
        server_log.log(
            "INFO",
            f"Incoming Request: {request.method} {request.url.path}",
            {
                "query": dict(request.query_params),
                "user_agent": request.headers.get("user-agent"),
            },
        )
    try:
        return await call_next(request)
    except Exception:
        logger.exception(
            "unhandled_error method=%s path=%s", request.method, request.url.path
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal Gateway Error"}
        )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.http_client = build_upstream_client(settings)

    def client_getter() -> Any:
        return app.state.http_client

    token_resolver = TokenResolver(
        client_getter=client_getter,
        refresh_skew_seconds=settings.oauth_refresh_skew_seconds,
        default_expires_in_seconds=settings.oauth_default_expires_in_seconds,
    )
    registry = EndpointRegistry(
        FileStore(settings.config_path), token_cache=token_resolver.cache
    )
    catalog = ModelCatalogCache(
        FileStore(settings.models_cache_path),
        registry=registry,
        token_resolver=token_resolver,
        client_getter=client_getter,
    )
    forwarder = RequestForwarder(
        registry=registry,
        catalog=catalog,
        token_resolver=token_resolver,
        client_getter=client_getter,
    )
    app.state.token_resolver = token_resolver
    app.state.registry = registry
    app.state.catalog = catalog
    app.state.forwarder = forwarder
    app.state.aggregator = UnifiedAggregator(
        registry=registry,
        forwarder=forwarder,
        token_resolver=token_resolver,
        client_getter=client_getter,
    )
    app.state.authenticator = UnifiedKeyAuthenticator(registry)
    app.state.history = ChatHistoryStore(FileStore(settings.history_path))
    app.state.server_log = JsonlEventLog(
        settings.server_log_path,
        source="server",
        enabled=settings.request_log_enabled,
    )
    app.state.client_log = JsonlEventLog(
        settings.client_log_path,
        source="client",
        enabled=settings.request_log_enabled,
    )

    config = await registry.load()
    logger.info(
        "startup complete config_path=%s models_cache_path=%s endpoints=%d "
        "current_endpoint=%s unified_key_configured=%s",
        settings.config_path,
        settings.models_cache_path,
        len(config.endpoints),
        config.current_endpoint_id,
        bool(config.unified_api_key),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    for name in ("server_log", "client_log"):
        event_log: JsonlEventLog | None = getattr(app.state, name, None)
        if event_log is not None:
            event_log.close()
    logger.info("shutdown complete")


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object request body.")
    return payload


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/endpoints")
async def list_endpoints() -> dict[str, Any]:
    registry: EndpointRegistry = app.state.registry
    return await registry.list_endpoints()


@app.post("/api/endpoints")
async def save_endpoint(request: Request) -> dict[str, Any]:
    payload = await _json_object(request)
    try:
        update = EndpointUpsert.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid endpoint: {exc.errors()[0]['msg']}") from exc
    registry: EndpointRegistry = app.state.registry
    await registry.upsert(update)
    return {"success": True}


@app.delete("/api/endpoints/{endpoint_id}")
async def delete_endpoint(endpoint_id: str) -> dict[str, Any]:
    registry: EndpointRegistry = app.state.registry
    await registry.delete(endpoint_id)
    return {"success": True}


@app.post("/api/endpoints/select")
async def select_endpoint(request: Request) -> dict[str, Any]:
    payload = await _json_object(request)
    raw_id = payload.get("id")
    registry: EndpointRegistry = app.state.registry
    await registry.select_current(str(raw_id) if raw_id is not None else None)
    return {"success": True}


@app.get("/api/models")
async def list_endpoint_models(
    endpoint_id: str | None = Query(default=None, alias="endpointId"),
) -> dict[str, Any]:
    forwarder: RequestForwarder = app.state.forwarder
    return await forwarder.proxy_models(endpoint_id or None)


@app.post("/api/models/refresh")
async def refresh_models() -> dict[str, Any]:
    catalog: ModelCatalogCache = app.state.catalog
    results = await catalog.refresh_all()
    return {"success": True, "results": results}


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    payload = await _json_object(request)
    raw_id = payload.get("endpointId")
    forwarder: RequestForwarder = app.state.forwarder
    return await forwarder.proxy_chat_completion(
        str(raw_id) if raw_id else None, payload
    )


@app.get("/api/history")
async def read_history() -> list[Any]:
    history: ChatHistoryStore = app.state.history
    return await history.read()


@app.post("/api/history")
async def write_history(request: Request) -> Response:
    try:
        chats = await request.json()
    except Exception as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc
    history: ChatHistoryStore = app.state.history
    try:
        await history.write(chats)
    except OSError as exc:
        logger.warning("history_save_failed error=%s", exc)
        return JSONResponse(
            status_code=500, content={"error": "Failed to save history"}
        )
    return JSONResponse(content={"success": True})


@app.post("/api/logs")
async def ingest_client_log(request: Request) -> dict[str, Any]:
    payload = await _json_object(request)
    client_log: JsonlEventLog = app.state.client_log
    client_log.log(
        str(payload.get("level") or "INFO"),
        str(payload.get("message") or ""),
        payload.get("details"),
    )
    return {"success": True}


@app.get("/unified/v1/models")
async def unified_models() -> dict[str, Any]:
    aggregator: UnifiedAggregator = app.state.aggregator
    return await aggregator.list_models()


@app.post("/unified/v1/chat/completions")
async def unified_chat_completions(request: Request) -> Response:
    payload = await _json_object(request)
    aggregator: UnifiedAggregator = app.state.aggregator
    return await aggregator.chat_completion(payload)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.warning(
        "request_failed path=%s status=%d error_type=%s error=%s",
        request.url.path,
        exc.status_code,
        exc.__class__.__name__,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "unified_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
