"""Request registry: a user's searching intent and its end of life."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.exceptions.base import AuthorizationError, TransientStoreError, ValidationError
from app.exceptions.connect import DuplicateConnectionRequestError, NotAParticipantError
from app.schemas.connect import ActiveConnectionResponse, ConnectionRequestResponse
from app.services.change_feed import ChangeEvent, ChangeFeed, EventType, get_change_feed, serialize_row
from models import ActiveConnection, ConnectionRequest, RequestStatus
from models.base import utcnow

logger = logging.getLogger(__name__)

REQUESTS = ConnectionRequest.__tablename__
CONNECTIONS = ActiveConnection.__tablename__


def normalize_interests(interests: Iterable[str] | None) -> list[str]:
    """Strip tags, drop blanks and duplicates, keep first-seen order."""
    seen: list[str] = []
    for tag in interests or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


@dataclass
class ConnectionStatus:
    """A user's current request and connection, read together."""

    request: ConnectionRequest | None = None
    connection: ActiveConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def is_searching(self) -> bool:
        return (
            self.connection is None
            and self.request is not None
            and self.request.status == RequestStatus.SEARCHING.value
        )


class RequestRegistry:
    """Service class for connection requests and the end of connections."""

    def __init__(
        self,
        db: AsyncSession,
        feed: ChangeFeed | None = None,
        requeue_on_end: bool | None = None,
    ):
        self.db = db
        self.feed = feed or get_change_feed()
        self.requeue_on_end = (
            settings.connect_requeue_on_end if requeue_on_end is None else requeue_on_end
        )

    async def create_request(
        self,
        user_id: UUID,
        nickname: str,
        location: str,
        interests: Iterable[str],
    ) -> ConnectionRequest:
        """Open a searching request for ``user_id``.

        Raises:
            ValidationError: Nickname, location or interests are empty
            DuplicateConnectionRequestError: The user already searches or is connected
            TransientStoreError: The store failed; nothing was persisted
        """
        nickname = (nickname or "").strip()
        location = (location or "").strip()
        tags = normalize_interests(interests)

        if not nickname:
            raise ValidationError("Nickname is required", details={"field": "nickname"})
        if not location:
            raise ValidationError("Location is required", details={"field": "location"})
        if not tags:
            raise ValidationError("Select at least one interest", details={"field": "interests"})

        if await self.get_request_for_user(user_id):
            raise DuplicateConnectionRequestError()
        if await self.get_connection_for_user(user_id):
            raise DuplicateConnectionRequestError("You are already in an active connection")

        request = ConnectionRequest(
            user_id=user_id,
            nickname=nickname,
            location=location,
            interests=tags,
            status=RequestStatus.SEARCHING.value,
        )

        try:
            self.db.add(request)
            await self.db.commit()
            await self.db.refresh(request)
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateConnectionRequestError() from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create connection request for {user_id}: {str(e)}")
            raise TransientStoreError("Failed to create connection request") from e

        logger.info(f"User {user_id} is searching in {location} for {tags}")
        await self._publish(
            REQUESTS, EventType.INSERT, new=serialize_row(request, ConnectionRequestResponse)
        )
        return request

    async def cancel_request(self, request_id: UUID, user_id: UUID | None = None) -> bool:
        """Delete a request. Deleting a request that is already gone is not an error.

        Returns:
            True if a row was deleted, False if it no longer existed
        """
        request = await self.get_request(request_id)
        if request is None:
            return False
        if user_id is not None and request.user_id != user_id:
            raise AuthorizationError("You cannot cancel another user's request")

        old = serialize_row(request, ConnectionRequestResponse)
        try:
            result = await self.db.execute(
                delete(ConnectionRequest).where(ConnectionRequest.id == request_id)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to cancel connection request {request_id}: {str(e)}")
            raise TransientStoreError("Failed to cancel connection request") from e

        if not result.rowcount:
            return False

        logger.info(f"Connection request {request_id} cancelled")
        await self._publish(REQUESTS, EventType.DELETE, old=old)
        return True

    async def get_status(self, user_id: UUID) -> ConnectionStatus:
        """Read the user's request and connection.

        Both tables are checked: the notification that flips one into the
        other may not have been processed yet.
        """
        return ConnectionStatus(
            request=await self.get_request_for_user(user_id),
            connection=await self.get_connection_for_user(user_id),
        )

    async def end_connection(
        self,
        connection_id: UUID,
        user_id: UUID,
        requeue: bool | None = None,
    ) -> bool:
        """End a live connection on behalf of one participant.

        The participants' requests are deleted, or, when requeueing, existing
        requests are put back to searching. No request rows are created.

        Returns:
            True if this call ended the connection, False if it was already gone
        """
        connection = await self.get_connection(connection_id)
        if connection is None:
            return False
        if not connection.has_participant(user_id):
            raise NotAParticipantError()

        requeue = self.requeue_on_end if requeue is None else requeue
        old_connection = serialize_row(connection, ActiveConnectionResponse)
        touched: list[tuple[ConnectionRequest, dict]] = []

        try:
            result = await self.db.execute(
                delete(ActiveConnection).where(ActiveConnection.id == connection_id)
            )
            if not result.rowcount:
                # The other participant got there first
                await self.db.rollback()
                return False

            requests = await self._requests_for_users(connection.participants())
            for request in requests:
                touched.append((request, serialize_row(request, ConnectionRequestResponse)))
                if requeue:
                    request.status = RequestStatus.SEARCHING.value
                    request.updated_at = utcnow()

            if not requeue and requests:
                await self.db.execute(
                    delete(ConnectionRequest).where(
                        ConnectionRequest.id.in_([request.id for request in requests])
                    )
                )

            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to end connection {connection_id}: {str(e)}")
            raise TransientStoreError("Failed to end connection") from e

        logger.info(f"Connection {connection_id} ended by {user_id} (requeue={requeue})")
        await self._publish(CONNECTIONS, EventType.DELETE, old=old_connection)

        for request, old in touched:
            if requeue:
                await self._publish(
                    REQUESTS,
                    EventType.UPDATE,
                    new=serialize_row(request, ConnectionRequestResponse),
                    old=old,
                )
            else:
                await self._publish(REQUESTS, EventType.DELETE, old=old)

        return True

    async def expire_stale_requests(self, max_age_seconds: float) -> int:
        """Delete searching requests nobody has refreshed for ``max_age_seconds``.

        Backstop for clients that disappeared before their own timer fired.
        """
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        stmt = select(ConnectionRequest).where(
            ConnectionRequest.status == RequestStatus.SEARCHING.value,
            ConnectionRequest.updated_at < cutoff,
        )
        stale = list((await self._execute(stmt)).scalars().all())

        expired = 0
        for request in stale:
            if await self.cancel_request(request.id):
                expired += 1

        if expired:
            logger.info(f"Expired {expired} stale connection requests")
        return expired

    async def get_request(self, request_id: UUID) -> ConnectionRequest | None:
        stmt = select(ConnectionRequest).where(ConnectionRequest.id == request_id)
        return (await self._execute(stmt)).scalar_one_or_none()

    async def get_request_for_user(self, user_id: UUID) -> ConnectionRequest | None:
        stmt = select(ConnectionRequest).where(ConnectionRequest.user_id == user_id)
        return (await self._execute(stmt)).scalars().first()

    async def get_connection(self, connection_id: UUID) -> ActiveConnection | None:
        stmt = select(ActiveConnection).where(ActiveConnection.id == connection_id)
        return (await self._execute(stmt)).scalar_one_or_none()

    async def get_connection_for_user(self, user_id: UUID) -> ActiveConnection | None:
        stmt = (
            select(ActiveConnection)
            .where(or_(ActiveConnection.user1_id == user_id, ActiveConnection.user2_id == user_id))
            .order_by(ActiveConnection.created_at.desc())
        )
        return (await self._execute(stmt)).scalars().first()

    # Private helper methods
    async def _requests_for_users(self, user_ids: Iterable[UUID]) -> list[ConnectionRequest]:
        stmt = select(ConnectionRequest).where(ConnectionRequest.user_id.in_(list(user_ids)))
        return list((await self.db.execute(stmt)).scalars().all())

    async def _execute(self, stmt):
        """Run a read, always reloading rows other sessions may have changed."""
        try:
            return await self.db.execute(stmt.execution_options(populate_existing=True))
        except SQLAlchemyError as e:
            logger.error(f"Connect store read failed: {str(e)}")
            raise TransientStoreError("Failed to read connection state") from e

    async def _publish(self, relation: str, event_type: EventType, new=None, old=None) -> None:
        await self.feed.publish(ChangeEvent(relation, event_type, new=new, old=old))
