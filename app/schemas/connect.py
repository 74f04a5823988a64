"""Connect schemas for request/response serialization."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from app.shared.pagination import CursorPage

from .base import BaseModelSchema, BaseSchema


class ConnectionRequestCreate(BaseSchema):
    """Schema for opening a connection request.

    Emptiness rules are enforced by the registry so that HTTP and WebSocket
    callers get the same error codes.
    """

    nickname: str = Field(..., max_length=100, description="Name shown to the matched peer")
    location: str = Field(..., max_length=255, description="Location, matched exactly")
    interests: list[str] = Field(..., description="Interest tags, at least one must overlap")


class ConnectionRequestResponse(BaseModelSchema):
    """Schema for connection request response."""

    user_id: UUID
    nickname: str
    location: str
    interests: list[str]
    status: str


class ActiveConnectionResponse(BaseModelSchema):
    """Schema for active connection response."""

    user1_id: UUID
    user2_id: UUID


class PeerProfile(BaseSchema):
    """The matched peer as shown in a live session."""

    id: UUID
    name: str | None = None
    nickname: str | None = None
    location: str | None = None
    interests: list[str] = Field(default_factory=list)
    avatar_url: str | None = None


class MessageCreate(BaseSchema):
    """Schema for sending a message."""

    content: str = Field(..., description="Message text")


class MessageResponse(BaseSchema):
    """Schema for message response."""

    id: int
    connection_id: UUID
    sender_id: UUID
    content: str
    created_at: datetime


class MessagePageResponse(CursorPage[MessageResponse]):
    """One page of messages, oldest first. Pass ``next_before`` as ``before`` for the previous page."""


class ConnectionStatusResponse(BaseSchema):
    """Current request and connection of a user."""

    request: ConnectionRequestResponse | None = None
    connection: ActiveConnectionResponse | None = None
    peer: PeerProfile | None = None


__all__ = [
    "ConnectionRequestCreate",
    "ConnectionRequestResponse",
    "ActiveConnectionResponse",
    "PeerProfile",
    "MessageCreate",
    "MessageResponse",
    "MessagePageResponse",
    "ConnectionStatusResponse",
]
