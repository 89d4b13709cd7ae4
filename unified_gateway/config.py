from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

AuthType = Literal["api-key", "oauth2"]
DEFAULT_AUTH_TYPE: AuthType = "api-key"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _coerce_optional_id(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class Endpoint(CamelModel):
    id: str
    name: str
    base_url: str
    auth_type: AuthType = DEFAULT_AUTH_TYPE
    api_key: str | None = None
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _coerce_optional_id(value)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("auth_type", mode="before")
    @classmethod
    def _default_auth_type(cls, value: Any) -> Any:
        return value or DEFAULT_AUTH_TYPE

    @property
    def has_key(self) -> bool:
        if self.auth_type == "oauth2":
            return bool(self.client_secret)
        return bool(self.api_key)

    def masked(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "baseUrl": self.base_url,
            "hasKey": self.has_key,
        }


class EndpointUpsert(CamelModel):
    """Partial endpoint update; ``model_fields_set`` tells omitted from null."""

    id: str | None = None
    name: str | None = None
    base_url: str | None = None
    auth_type: AuthType | None = None
    api_key: str | None = None
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _coerce_optional_id(value)

    @field_validator("auth_type", mode="before")
    @classmethod
    def _blank_auth_type(cls, value: Any) -> Any:
        return value or None


class GatewayConfig(CamelModel):
    endpoints: list[Endpoint] = Field(default_factory=list)
    current_endpoint_id: str | None = None
    unified_api_key: str | None = None

    _unparsed_endpoints: list[Any] = PrivateAttr(default_factory=list)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> GatewayConfig:
        """Validate endpoint records one at a time.

        Records that fail validation are kept verbatim and written back by
        :meth:`to_document`.
        """
        records = document.get("endpoints")
        config = cls.model_validate({**document, "endpoints": []})
        for record in records if isinstance(records, list) else []:
            try:
                config.endpoints.append(Endpoint.model_validate(record))
            except PydanticValidationError:
                config._unparsed_endpoints.append(record)
        return config

    @property
    def unparsed_endpoints(self) -> list[Any]:
        return list(self._unparsed_endpoints)

    @field_validator("current_endpoint_id", "unified_api_key", mode="before")
    @classmethod
    def _coerce_optional_ids(cls, value: Any) -> Any:
        return _coerce_optional_id(value)

    @field_validator("endpoints", mode="before")
    @classmethod
    def _null_endpoints(cls, value: Any) -> Any:
        return value or []

    def find(self, endpoint_id: str | None) -> Endpoint | None:
        if endpoint_id is None:
            return None
        for endpoint in self.endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None

    def find_by_name(self, name: str) -> Endpoint | None:
        normalized = name.lower()
        for endpoint in self.endpoints:
            if endpoint.name.lower() == normalized:
                return endpoint
        return None

    def remove(self, endpoint_id: str) -> None:
        self.endpoints = [
            endpoint for endpoint in self.endpoints if endpoint.id != endpoint_id
        ]
        self._unparsed_endpoints = [
            record
            for record in self._unparsed_endpoints
            if not (isinstance(record, dict) and str(record.get("id")) == endpoint_id)
        ]

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(by_alias=True, mode="json")
        document["endpoints"].extend(self._unparsed_endpoints)
        return document
