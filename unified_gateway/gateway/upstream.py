from __future__ import annotations

from typing import Any

import httpx

from unified_gateway.config import Endpoint
from unified_gateway.errors import UpstreamError
from unified_gateway.settings import Settings


def build_upstream_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    connect_timeout = max(0.1, float(settings.upstream_connect_timeout_seconds))
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=max(0.1, float(settings.upstream_timeout_seconds)),
            connect=connect_timeout,
            read=max(0.1, float(settings.upstream_read_timeout_seconds)),
            write=max(0.1, float(settings.upstream_write_timeout_seconds)),
            pool=max(0.1, float(settings.upstream_pool_timeout_seconds)),
        ),
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        http2=transport is None and _can_enable_http2(),
        transport=transport,
    )


def endpoint_url(endpoint: Endpoint, path: str) -> str:
    return f"{endpoint.base_url.rstrip('/')}{path}"


def upstream_headers(token: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


async def fetch_model_records(
    client: httpx.AsyncClient,
    endpoint: Endpoint,
    token: str | None,
) -> list[dict[str, Any]]:
    """GET ``<baseUrl>/models`` and return the raw ``data`` records."""
    try:
        response = await client.get(
            endpoint_url(endpoint, "/models"),
            headers=upstream_headers(token),
        )
    except httpx.RequestError as exc:
        details = request_error_details(exc)
        raise UpstreamError(
            f"Could not reach '{endpoint.name}' "
            f"({details['error_type']}): {details['error']}"
        ) from exc

    if not response.is_success:
        raise UpstreamError(
            f"Upstream Error: {response.status_code}",
            upstream_status=response.status_code,
            upstream_body=response.text,
        )

    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamError(
            f"Upstream '{endpoint.name}' returned a non-JSON models list."
        ) from exc

    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True
