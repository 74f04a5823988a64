"""
Unit tests for the MessageLog.
"""

import asyncio
import uuid

import pytest
import pytest_asyncio
from sqlalchemy import delete

from app.domains.connect.messages import MessageLog
from app.exceptions.base import ValidationError
from app.exceptions.connect import ActiveConnectionNotFoundError, NotAParticipantError
from app.schemas.connect import MessageResponse
from models import ActiveConnection
from tests.factories import create_messages


@pytest_asyncio.fixture
async def connection(session_factory, ada, bo):
    async with session_factory() as session:
        live = ActiveConnection(user1_id=ada.id, user2_id=bo.id)
        session.add(live)
        await session.commit()
        await session.refresh(live)
    return live


class TestFetchPage:
    """Test cases for fetch_page."""

    @pytest.mark.asyncio
    async def test_empty(self, test_db, feed, connection):
        page = await MessageLog(test_db, feed).fetch_page(connection.id)
        assert page == {"items": [], "has_more": False, "next_before": None}

    @pytest.mark.asyncio
    async def test_newest_page_in_ascending_order(self, test_db, feed, connection, ada, bo):
        stored = await create_messages(test_db, connection.id, [ada.id, bo.id], 60)

        page = await MessageLog(test_db, feed, page_size=50).fetch_page(connection.id)

        ids = [m.id for m in page["items"]]
        assert ids == [m.id for m in stored[10:]]
        assert page["has_more"] is True
        assert page["next_before"] == stored[10].id

    @pytest.mark.asyncio
    async def test_older_page_before_anchor(self, test_db, feed, connection, ada, bo):
        stored = await create_messages(test_db, connection.id, [ada.id, bo.id], 60)
        log = MessageLog(test_db, feed, page_size=50)

        first = await log.fetch_page(connection.id)
        older = await log.fetch_page(connection.id, before_message_id=first["next_before"])

        assert [m.id for m in older["items"]] == [m.id for m in stored[:10]]
        assert older["has_more"] is False
        assert older["next_before"] is None

    @pytest.mark.asyncio
    async def test_limit_and_other_connections(self, test_db, feed, connection, ada, bo):
        await create_messages(test_db, connection.id, [ada.id], 3)
        await create_messages(test_db, uuid.uuid4(), [bo.id], 3)

        page = await MessageLog(test_db, feed).fetch_page(connection.id, limit=2)

        assert [m.content for m in page["items"]] == ["message 1", "message 2"]
        assert all(m.connection_id == connection.id for m in page["items"])

    @pytest.mark.asyncio
    async def test_participants_only(self, test_db, feed, connection, cy):
        with pytest.raises(NotAParticipantError):
            await MessageLog(test_db, feed).fetch_page(connection.id, user_id=cy.id)

    @pytest.mark.asyncio
    async def test_history_outlives_connection(self, test_db, feed, connection, ada):
        await create_messages(test_db, connection.id, [ada.id], 2)
        await test_db.execute(delete(ActiveConnection).where(ActiveConnection.id == connection.id))
        await test_db.commit()

        page = await MessageLog(test_db, feed).fetch_page(connection.id)
        assert len(page["items"]) == 2

        with pytest.raises(ActiveConnectionNotFoundError):
            await MessageLog(test_db, feed).fetch_page(connection.id, user_id=ada.id)


class TestAppend:
    """Test cases for append."""

    @pytest.mark.asyncio
    async def test_append_trims_and_persists(self, test_db, feed, connection, ada):
        message = await MessageLog(test_db, feed).append(connection.id, ada.id, "  hi Bo  ")

        assert message.id is not None
        assert message.content == "hi Bo"
        assert message.sender_id == ada.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_blank_content(self, test_db, feed, connection, ada, content):
        with pytest.raises(ValidationError):
            await MessageLog(test_db, feed).append(connection.id, ada.id, content)

    @pytest.mark.asyncio
    async def test_too_long(self, test_db, feed, connection, ada):
        with pytest.raises(ValidationError):
            await MessageLog(test_db, feed, max_length=5).append(connection.id, ada.id, "toolong")

    @pytest.mark.asyncio
    async def test_outsider_cannot_send(self, test_db, feed, connection, cy):
        with pytest.raises(NotAParticipantError):
            await MessageLog(test_db, feed).append(connection.id, cy.id, "hello")

    @pytest.mark.asyncio
    async def test_ended_connection(self, test_db, feed, ada):
        with pytest.raises(ActiveConnectionNotFoundError):
            await MessageLog(test_db, feed).append(uuid.uuid4(), ada.id, "hello")


class TestSubscribe:
    """Test cases for subscribe."""

    @pytest.mark.asyncio
    async def test_receives_inserts_in_order(self, test_db, feed, connection, ada, bo):
        log = MessageLog(test_db, feed)
        received: list[MessageResponse] = []
        subscription = log.subscribe(connection.id, received.append)

        await log.append(connection.id, ada.id, "one")
        await log.append(connection.id, bo.id, "two")
        await feed.drain()

        assert [m.content for m in received] == ["one", "two"]
        assert all(isinstance(m, MessageResponse) for m in received)
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_async_callback_and_filtering(self, session_factory, test_db, feed, connection, ada, bo, cy):
        async with session_factory() as session:
            other = ActiveConnection(user1_id=cy.id, user2_id=bo.id)
            session.add(other)
            await session.commit()
            await session.refresh(other)

        log = MessageLog(test_db, feed)
        received = []

        async def on_insert(message):
            await asyncio.sleep(0)
            received.append(message.content)

        log.subscribe(connection.id, on_insert)
        await log.append(other.id, cy.id, "elsewhere")
        await log.append(connection.id, ada.id, "here")
        await feed.drain()

        assert received == ["here"]
