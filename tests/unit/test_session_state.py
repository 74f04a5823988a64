"""
Unit tests for the session transition table, search timer and snapshot.
"""

import asyncio

import pytest

from app.domains.connect.session import (
    TIMEOUT_NOTICE,
    TRANSITIONS,
    SearchTimer,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    can_transition,
    transition,
)
from app.exceptions.connect import InvalidSessionTransitionError


class TestTransitions:
    """Test cases for the transition table."""

    @pytest.mark.parametrize(
        "state,event,expected",
        [
            (SessionState.IDLE, SessionEvent.SUBMITTED, SessionState.SEARCHING),
            (SessionState.SEARCHING, SessionEvent.MATCHED, SessionState.CONNECTED),
            (SessionState.SEARCHING, SessionEvent.TIMED_OUT, SessionState.IDLE),
            (SessionState.SEARCHING, SessionEvent.CANCELLED, SessionState.IDLE),
            (SessionState.CONNECTED, SessionEvent.ENDED, SessionState.IDLE),
            (SessionState.CONNECTED, SessionEvent.PEER_ENDED, SessionState.IDLE),
            (SessionState.CONNECTED, SessionEvent.REQUEUED, SessionState.SEARCHING),
        ],
    )
    def test_defined_transitions(self, state, event, expected):
        assert transition(state, event) == expected

    @pytest.mark.parametrize(
        "state,event",
        [
            (SessionState.IDLE, SessionEvent.CANCELLED),
            (SessionState.IDLE, SessionEvent.TIMED_OUT),
            (SessionState.SEARCHING, SessionEvent.SUBMITTED),
            (SessionState.CONNECTED, SessionEvent.SUBMITTED),
            (SessionState.CONNECTED, SessionEvent.TIMED_OUT),
        ],
    )
    def test_undefined_transitions_raise(self, state, event):
        assert can_transition(state, event) is False
        with pytest.raises(InvalidSessionTransitionError):
            transition(state, event)

    def test_connected_is_only_reached_by_matching(self):
        targets = {
            event for (_, event), target in TRANSITIONS.items() if target == SessionState.CONNECTED
        }
        assert targets == {SessionEvent.MATCHED}


class TestSearchTimer:
    """Test cases for SearchTimer."""

    @pytest.mark.asyncio
    async def test_fires_once(self):
        calls = []

        async def callback():
            calls.append(1)

        timer = SearchTimer(0.01, callback).start()
        assert timer.pending is True
        await asyncio.sleep(0.05)

        assert calls == [1]
        assert timer.fired is True
        assert timer.pending is False

    @pytest.mark.asyncio
    async def test_cancel_before_fire(self):
        calls = []

        async def callback():
            calls.append(1)

        timer = SearchTimer(0.02, callback).start()
        assert timer.cancel() is True
        await asyncio.sleep(0.05)

        assert calls == []
        assert timer.cancelled is True
        assert timer.fired is False

    @pytest.mark.asyncio
    async def test_cancel_after_fire_is_noop(self):
        async def callback():
            return None

        timer = SearchTimer(0.0, callback).start()
        await asyncio.sleep(0.01)

        assert timer.fired is True
        assert timer.cancel() is False
        assert timer.cancelled is False

    @pytest.mark.asyncio
    async def test_double_cancel(self):
        async def callback():
            return None

        timer = SearchTimer(1, callback).start()
        assert timer.cancel() is True
        assert timer.cancel() is False


class TestSessionSnapshot:
    """Test cases for SessionSnapshot."""

    def test_default_is_idle(self):
        snapshot = SessionSnapshot()
        assert snapshot.state == SessionState.IDLE
        assert snapshot.messages == ()

    def test_to_dict(self):
        snapshot = SessionSnapshot(
            state=SessionState.SEARCHING, event=SessionEvent.SUBMITTED, notice="hello"
        )
        data = snapshot.to_dict()
        assert data["state"] == "searching"
        assert data["event"] == "submitted"
        assert data["notice"] == "hello"
        assert data["messages"] == []
        assert data["connection"] is None

    def test_timeout_notice_text(self):
        notice = TIMEOUT_NOTICE.format(seconds=40)
        assert notice.startswith("No connections found after 40 seconds.")
        assert "Your request has been cancelled." in notice
