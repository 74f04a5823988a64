"""Message log: the append-only chat history of one active connection."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.exceptions.base import TransientStoreError, ValidationError
from app.exceptions.connect import ActiveConnectionNotFoundError, NotAParticipantError
from app.schemas.connect import MessageResponse
from app.services.change_feed import (
    ChangeEvent,
    ChangeFeed,
    EventType,
    Subscription,
    column_equals,
    get_change_feed,
    serialize_row,
)
from app.shared.pagination import CursorParams, paginate_before
from models import ActiveConnection, Message

logger = logging.getLogger(__name__)

MESSAGES = Message.__tablename__


class MessageLog:
    """Service class for reading, appending and following chat messages."""

    def __init__(
        self,
        db: AsyncSession | None,
        feed: ChangeFeed | None = None,
        page_size: int | None = None,
        max_length: int | None = None,
    ):
        self.db = db
        self.feed = feed or get_change_feed()
        self.page_size = page_size or settings.connect_messages_page_size
        self.max_length = max_length or settings.connect_message_max_length

    async def fetch_page(
        self,
        connection_id: UUID,
        before_message_id: int | None = None,
        limit: int | None = None,
        user_id: UUID | None = None,
    ) -> dict[str, Any]:
        """Load one page of history, oldest first.

        Without ``before_message_id`` this is the newest page; with it, only
        messages strictly older than that id are returned. Passing ``user_id``
        restricts reading to the two participants.

        Returns:
            Dictionary with ``items``, ``has_more`` and ``next_before``
        """
        if user_id is not None:
            connection = await self._get_connection(connection_id)
            if connection is None:
                raise ActiveConnectionNotFoundError()
            if not connection.has_participant(user_id):
                raise NotAParticipantError()

        params = CursorParams(before=before_message_id, limit=limit or self.page_size)
        query = select(Message).where(Message.connection_id == connection_id)

        try:
            return await paginate_before(
                self.db, query, Message.id, (Message.created_at, Message.id), params
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to load messages for {connection_id}: {str(e)}")
            raise TransientStoreError("Failed to load messages") from e

    async def append(self, connection_id: UUID, sender_id: UUID, content: str) -> Message:
        """Persist a message from one participant.

        The message also arrives through ``subscribe``; callers do not need to
        add it to their local list.

        Raises:
            ValidationError: Content is empty, whitespace or too long
            ActiveConnectionNotFoundError: The connection has ended
            NotAParticipantError: The sender is not in the connection
            TransientStoreError: The store failed; nothing was persisted
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty", details={"field": "content"})
        if len(text) > self.max_length:
            raise ValidationError(
                f"Message content cannot exceed {self.max_length} characters",
                details={"field": "content"},
            )

        connection = await self._get_connection(connection_id)
        if connection is None:
            raise ActiveConnectionNotFoundError()
        if not connection.has_participant(sender_id):
            raise NotAParticipantError()

        message = Message(connection_id=connection_id, sender_id=sender_id, content=text)
        try:
            self.db.add(message)
            await self.db.commit()
            await self.db.refresh(message)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to send message in {connection_id}: {str(e)}")
            raise TransientStoreError("Failed to send message") from e

        await self.feed.publish(
            ChangeEvent(MESSAGES, EventType.INSERT, new=serialize_row(message, MessageResponse))
        )
        return message

    def subscribe(
        self,
        connection_id: UUID,
        on_insert: Callable[[MessageResponse], Awaitable[None] | None],
    ) -> Subscription:
        """Call ``on_insert`` once per new message in this connection, in arrival order."""

        async def deliver(event: ChangeEvent) -> None:
            result = on_insert(MessageResponse.model_validate(event.new))
            if result is not None:
                await result

        return self.feed.subscribe(
            MESSAGES,
            deliver,
            predicate=column_equals("connection_id", connection_id),
            event_types={EventType.INSERT},
            name=f"messages:{connection_id}",
        )

    async def _get_connection(self, connection_id: UUID) -> ActiveConnection | None:
        stmt = (
            select(ActiveConnection)
            .where(ActiveConnection.id == connection_id)
            .execution_options(populate_existing=True)
        )
        try:
            return (await self.db.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise TransientStoreError("Failed to read connection") from e
