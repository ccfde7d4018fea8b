"""Pydantic models for the remote API's JSON bodies."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HttpMethod(str, Enum):
    """HTTP verbs used by the request client."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class WireModel(BaseModel):
    """Base for camelCase wire bodies that are also constructible by field name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ErrorBody(WireModel):
    """Error envelope returned by the remote API."""

    code: str = "SERVER_ERROR"
    message: str = "Unknown error"
    details: list[Any] = Field(default_factory=list)
    request_id: str | None = None
    timestamp: str | None = None


class ApiResponse(WireModel):
    """Standard response envelope: {success, data?, meta?, error?}."""

    success: bool
    data: Any = None
    meta: dict[str, Any] | None = None
    error: ErrorBody | None = None


# Auth endpoints


class DeviceInfo(WireModel):
    platform: str = "desktop"
    version: str = "1.0.0"
    model: str | None = None


class LoginRequest(WireModel):
    email: str
    password: str
    device_id: str
    device_info: DeviceInfo


class RefreshTokenRequest(WireModel):
    refresh_token: str


class LogoutRequest(WireModel):
    device_id: str


class TokenResponse(WireModel):
    """Body of a successful login or refresh."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: dict[str, Any] | None = None
    token_type: str = "Bearer"


# Sync endpoints


class UploadChangesRequest(WireModel):
    changes: list[dict[str, Any]]
    device_id: str


class ServerConflict(WireModel):
    """A journal entry the server could not apply because the entity changed remotely."""

    client_id: str
    conflict_type: str = Field(
        default="version_conflict",
        validation_alias=AliasChoices("conflictType", "type", "conflict_type"),
    )
    server_data: Any = Field(
        default=None,
        validation_alias=AliasChoices("serverData", "remoteData", "server_data"),
    )
    local_data: Any = Field(
        default=None,
        validation_alias=AliasChoices("localData", "local_data"),
    )


class ProcessedChange(WireModel):
    """Acknowledged journal entry, optionally with the server's copy of the record."""

    client_id: str
    id: str | None = None
    data: dict[str, Any] | None = None


class FailedChange(WireModel):
    client_id: str
    message: str = "Rejected by server"


class UploadChangesResponse(WireModel):
    conflicts: list[ServerConflict] = Field(default_factory=list)
    processed: list[ProcessedChange] = Field(default_factory=list)
    failed: list[FailedChange] = Field(default_factory=list)

    @classmethod
    def parse(cls, data: Any) -> UploadChangesResponse:
        """Accept processed entries either as bare clientIds or as objects."""
        data = dict(data or {})
        data["processed"] = [
            {"clientId": item} if isinstance(item, str) else item
            for item in data.get("processed") or []
        ]
        return cls.model_validate(data)


class RemoteChangeBody(WireModel):
    """One change in a get-changes page."""

    entity_type: str = Field(validation_alias=AliasChoices("entityType", "type", "entity_type"))
    action: str
    id: str | None = None
    payload: Any = Field(default=None, validation_alias=AliasChoices("payload", "data"))
    source_id: str | None = None
    timestamp: datetime
    version: int | None = None


class ChangesPage(WireModel):
    changes: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    next_token: str | None = None
    server_time: datetime | None = None
