"""
Active connection model: a live pairing between exactly two users.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey

from .base import UUID, BaseModel


class ActiveConnection(BaseModel):
    """
    Represents a live chat pairing. Either participant may end it.
    """

    __tablename__ = "active_connections"

    user1_id = Column(UUID(), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    user2_id = Column(UUID(), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (
        CheckConstraint("user1_id <> user2_id", name="active_connections_distinct_users"),
    )

    def participants(self) -> tuple:
        return (self.user1_id, self.user2_id)

    def has_participant(self, user_id) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def peer_of(self, user_id):
        """Return the other participant's id."""
        return self.user2_id if self.user1_id == user_id else self.user1_id
