"""
Connection request model: a user's open "searching" intent.
"""

import enum

from sqlalchemy import Column, ForeignKey, Index, String

from .base import UUID, BaseModel, TagList


class RequestStatus(str, enum.Enum):
    """Connection request status enumeration."""

    SEARCHING = "searching"
    CONNECTED = "connected"


class ConnectionRequest(BaseModel):
    """
    Represents a user's request to be matched with a peer.

    At most one row exists per user; the unique constraint on ``user_id`` is
    what makes concurrent duplicate submissions fail.
    """

    __tablename__ = "connection_requests"

    user_id = Column(UUID(), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)
    nickname = Column(String(100), nullable=False)
    location = Column(String(255), nullable=False)
    interests = Column(TagList, nullable=False, default=list)
    status = Column(String(20), nullable=False, default=RequestStatus.SEARCHING.value)

    __table_args__ = (
        Index("idx_connection_requests_status_location", "status", "location"),
    )
