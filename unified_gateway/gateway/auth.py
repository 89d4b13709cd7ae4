from __future__ import annotations

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse

from unified_gateway.registry import EndpointRegistry


class UnifiedKeyAuthenticator:
    """Shared-secret bearer gate in front of the unified API.

    The expected key is read from the durable config on every request. Until a
    key has been generated the gate stays open.
    """

    def __init__(self, registry: EndpointRegistry):
        self._registry = registry

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        expected = await self._registry.unified_api_key()
        if not expected:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Unauthorized: Missing Bearer token.")

        if not secrets.compare_digest(token.strip().encode(), expected.encode()):
            return _unauthorized("Unauthorized: Invalid Unified API Key")

        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
