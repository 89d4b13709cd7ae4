"""Exception hierarchy shared by the gateway components.

Every error raised on a request path derives from :class:`GatewayError`, which
knows the HTTP status it maps to. Route handlers turn these into
``{"error": ...}`` JSON bodies.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ConfigError(GatewayError):
    """Raised when a durable file is missing or cannot be decoded."""


class AuthError(GatewayError):
    """Raised when an OAuth token request is rejected or unreachable."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class UpstreamError(GatewayError):
    """Raised when a provider answers with a non-success status."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_body: Any = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class NotFoundError(GatewayError):
    status_code = 404


class ValidationError(GatewayError):
    status_code = 400
