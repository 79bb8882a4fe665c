"""Pydantic models for notices and their wire payload."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class User(BaseModel):
    """User information attached to a notice."""

    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    email: str | None = None
    name: str | None = None


class RequestInfo(BaseModel):
    """Request information captured with a notice."""

    model_config = ConfigDict(extra="allow")

    url: str | None = None
    method: str | None = None
    path: str | None = None
    query: str | None = None
    headers: dict[str, str] | None = None
    params: dict[str, Any] | None = None
    body: Any = None
    remote_ip: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    content_type: str | None = None
    content_length: str | int | None = None


class Notice(BaseModel):
    """A single error event, frozen once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    error_class: str
    message: str
    backtrace: list[str] = Field(default_factory=list)
    fingerprint: str | None = None
    tags: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    request: dict[str, Any] = Field(default_factory=dict)
    user: dict[str, Any] = Field(default_factory=dict)
    environment: str | None = None
    occurred_at: str
    app_name: str | None = None
    revision: str | None = None


class Notifier(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    version: str
    language: str
    language_version: str


class ErrorPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    error_class: str = Field(..., alias="class")
    message: str
    backtrace: list[str]
    occurred_at: str
    fingerprint: str | None = None
    tags: list[str] | None = None


class NoticePayload(BaseModel):
    """Wire shape posted to ``/ingest/v1/errors``."""

    model_config = ConfigDict(extra="forbid")

    error: ErrorPayload
    context: dict[str, Any]
    request: dict[str, Any]
    user: dict[str, Any]
    notifier: Notifier

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready body; unset ``fingerprint`` and ``tags`` are left out."""
        data = self.model_dump(mode="json", by_alias=True)
        error = data["error"]
        for key in ("fingerprint", "tags"):
            if error.get(key) is None:
                error.pop(key, None)
        return data


class ApiResponse(BaseModel):
    """Body of a 201 response from the ingestion API."""

    id: int
    problem_id: int
