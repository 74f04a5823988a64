"""Matchmaker: pairs compatible searching requests into active connections.

Two requests are compatible when they belong to different users, name the
exact same location and share at least one interest tag. Among several
compatible candidates the one searching longest wins (earliest
``created_at``, then id).
"""

import logging
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.exceptions.base import TransientStoreError
from app.schemas.connect import ActiveConnectionResponse, ConnectionRequestResponse
from app.services.change_feed import ChangeEvent, ChangeFeed, EventType, get_change_feed, serialize_row
from models import ActiveConnection, ConnectionRequest, RequestStatus

logger = logging.getLogger(__name__)


def is_compatible(request: ConnectionRequest, other: ConnectionRequest) -> bool:
    """Any shared interest tag and exactly equal location."""
    return (
        request.user_id != other.user_id
        and request.location == other.location
        and bool(set(request.interests or []) & set(other.interests or []))
    )


def pick_candidate(
    request: ConnectionRequest, candidates: Iterable[ConnectionRequest]
) -> ConnectionRequest | None:
    """Choose the partner for ``request``, or None."""
    eligible = [
        candidate
        for candidate in candidates
        if candidate.id != request.id
        and candidate.status == RequestStatus.SEARCHING.value
        and is_compatible(request, candidate)
    ]
    return min(eligible, key=lambda c: (c.created_at, str(c.id)), default=None)


class Matchmaker:
    """Service class that turns two searching requests into a connection."""

    def __init__(self, db: AsyncSession, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed or get_change_feed()

    async def match_request(self, request_id: UUID) -> ActiveConnection | None:
        """Try to pair one request.

        Returns:
            The new connection, or None when the request is gone, no longer
            searching, or has no compatible partner
        """
        try:
            connection = await self._pair(request_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Matching request {request_id} failed: {str(e)}")
            raise TransientStoreError("Failed to match connection request") from e
        return connection

    async def sweep(self) -> int:
        """Try to pair every searching request, oldest first.

        Returns:
            Number of connections created
        """
        stmt = (
            select(ConnectionRequest.id)
            .where(ConnectionRequest.status == RequestStatus.SEARCHING.value)
            .order_by(ConnectionRequest.created_at, ConnectionRequest.id)
        )
        try:
            request_ids = list((await self.db.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise TransientStoreError("Failed to list searching requests") from e

        pairs = 0
        for request_id in request_ids:
            if await self.match_request(request_id):
                pairs += 1

        if pairs:
            logger.info(f"Matchmaker sweep created {pairs} connections")
        return pairs

    async def _pair(self, request_id: UUID) -> ActiveConnection | None:
        request = await self._load_request(request_id)
        if (
            request is None
            or request.status != RequestStatus.SEARCHING.value
            or await self._is_connected(request.user_id)
        ):
            # Ends the read transaction without expiring objects callers hold
            await self.db.commit()
            return None

        stmt = (
            select(ConnectionRequest)
            .where(
                ConnectionRequest.status == RequestStatus.SEARCHING.value,
                ConnectionRequest.location == request.location,
                ConnectionRequest.user_id != request.user_id,
                ConnectionRequest.user_id.not_in(select(ActiveConnection.user1_id)),
                ConnectionRequest.user_id.not_in(select(ActiveConnection.user2_id)),
            )
            .order_by(ConnectionRequest.created_at, ConnectionRequest.id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        candidates = (await self.db.execute(stmt)).scalars().all()
        peer = pick_candidate(request, candidates)
        if peer is None:
            await self.db.commit()
            return None

        old_rows = [serialize_row(r, ConnectionRequestResponse) for r in (peer, request)]

        # The longer-waiting user is user1
        first, second = sorted((peer, request), key=lambda r: (r.created_at, str(r.id)))
        connection = ActiveConnection(user1_id=first.user_id, user2_id=second.user_id)
        peer.status = RequestStatus.CONNECTED.value
        request.status = RequestStatus.CONNECTED.value
        self.db.add(connection)
        await self.db.commit()
        await self.db.refresh(connection)
        await self.db.refresh(peer)
        await self.db.refresh(request)

        logger.info(
            f"Matched {peer.user_id} with {request.user_id} in {request.location} "
            f"(connection {connection.id})"
        )

        await self.feed.publish(
            ChangeEvent(
                ActiveConnection.__tablename__,
                EventType.INSERT,
                new=serialize_row(connection, ActiveConnectionResponse),
            )
        )
        for row, old in zip((peer, request), old_rows):
            await self.feed.publish(
                ChangeEvent(
                    ConnectionRequest.__tablename__,
                    EventType.UPDATE,
                    new=serialize_row(row, ConnectionRequestResponse),
                    old=old,
                )
            )
        return connection

    async def _load_request(self, request_id: UUID) -> ConnectionRequest | None:
        stmt = (
            select(ConnectionRequest)
            .where(ConnectionRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _is_connected(self, user_id: UUID) -> bool:
        stmt = select(ActiveConnection.id).where(
            or_(ActiveConnection.user1_id == user_id, ActiveConnection.user2_id == user_id)
        )
        return (await self.db.execute(stmt)).first() is not None
