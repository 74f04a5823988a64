"""
Provides the Profile model for the application's database schema.

A profile is the local record of an identity-provider user. The Connect flow
only needs a handful of its attributes: the stable id used as ``user_id`` on
requests, connections and messages, and the public fields shown to a peer
once two users are matched.

Attributes
----------
auth_subject : sqlalchemy.Column
    The ``sub`` claim of the identity provider's token. Unique.
email : sqlalchemy.Column
    Email address from the token, if any.
name : sqlalchemy.Column
    Display name.
nickname, location, interests : sqlalchemy.Column
    Defaults offered when the user opens a connection request.
role : sqlalchemy.Column
    ``learner`` or ``tutor``.
"""

import enum

from sqlalchemy import Boolean, Column, String

from .base import BaseModel, TagList


class ProfileRole(str, enum.Enum):
    """Profile role enumeration."""

    LEARNER = "learner"
    TUTOR = "tutor"


class Profile(BaseModel):
    """
    Represents a user profile entity in the application.

    :ivar auth_subject: Identifier of the user at the identity provider.
    :type auth_subject: str
    :ivar interests: Interest tags the user picked on their profile.
    :type interests: list[str]
    """

    __tablename__ = "profiles"

    auth_subject = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    nickname = Column(String(100), nullable=True)
    location = Column(String(255), nullable=True)
    interests = Column(TagList, nullable=False, default=list)
    avatar_url = Column(String(1024), nullable=True)
    role = Column(String(20), nullable=False, default=ProfileRole.LEARNER.value)
    is_active = Column(Boolean, default=True, nullable=False)
