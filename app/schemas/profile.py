"""Profile schemas for response serialization."""

from pydantic import Field

from .base import BaseModelSchema


class ProfileResponse(BaseModelSchema):
    """Schema for the current user's own profile."""

    auth_subject: str
    email: str | None = None
    name: str | None = None
    nickname: str | None = None
    location: str | None = None
    interests: list[str] = Field(default_factory=list)
    avatar_url: str | None = None
    role: str
    is_active: bool


class PublicProfileResponse(BaseModelSchema):
    """Schema for a profile as seen by another user."""

    name: str | None = None
    nickname: str | None = None
    location: str | None = None
    interests: list[str] = Field(default_factory=list)
    avatar_url: str | None = None
    role: str
