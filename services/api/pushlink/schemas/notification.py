"""Notification send schemas."""

from typing import Any

from pydantic import BaseModel, Field


class NotifyRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field("", max_length=4000)
    deep_link: str | None = Field(None, max_length=2048)
    data: dict[str, Any] = Field(default_factory=dict)


class AttemptResponse(BaseModel):
    platform: str
    state: str
    outcome: str
    retryable: bool
    provider_message_id: str | None = None


class NotifyResponse(BaseModel):
    status: str
    delivered: int = 0
    invalid_recipients: int = 0
    deferred: int = 0
    attempts: list[AttemptResponse] = []
