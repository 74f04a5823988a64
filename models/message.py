"""
Message model for peer chat messages.
"""

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, Text

from .base import UUID, Base, utcnow


class Message(Base):
    """
    Represents an immutable chat message inside one active connection.

    ``connection_id`` carries no foreign key: messages outlive the
    connection row and their retention is decided elsewhere.
    """

    __tablename__ = "messages"

    # Integer ids are monotonic, which makes them usable as a pagination cursor.
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    connection_id = Column(UUID(), nullable=False)
    sender_id = Column(UUID(), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_messages_connection_created", "connection_id", "created_at", "id"),
    )
