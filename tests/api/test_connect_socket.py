"""
Tests for the Connect WebSocket bridge.

The socket is exercised through ``SessionSocket`` with an in-memory stand-in
for the Starlette WebSocket so that it runs on the test's event loop.
"""

import asyncio
import json

import pytest
from fastapi import WebSocketDisconnect

from app.domains.connect.controller import (
    WS_POLICY_VIOLATION,
    SessionSocket,
    authenticate_websocket,
    connect_websocket,
)
from app.domains.connect.session import SessionController
from tests.helpers import make_token, wait_for


class FakeWebSocket:
    """Collects sent frames and replays queued incoming frames."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed_with: int | None = None
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000):
        self.closed_with = code

    async def receive_json(self):
        frame = await self.incoming.get()
        if frame is None:
            raise WebSocketDisconnect(code=1000)
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def send_json(self, frame):
        self.sent.append(frame)

    def snapshots(self):
        return [frame["data"] for frame in self.sent if frame["type"] == "snapshot"]

    def errors(self):
        return [frame for frame in self.sent if frame["type"] == "error"]


@pytest.fixture
def socket_for(session_factory, feed):
    """Start a SessionSocket for a profile; disconnect it after the test."""
    running = []

    async def start(profile):
        websocket = FakeWebSocket()
        controller = SessionController(
            session_factory, feed, profile.id, search_timeout=30, auto_match=True
        )
        task = asyncio.create_task(SessionSocket(websocket, controller).run())
        running.append((websocket, task))
        await wait_for(lambda: websocket.snapshots())
        return websocket

    yield start

    for websocket, task in running:
        if not task.done():
            task.cancel()


async def disconnect(websocket):
    await websocket.incoming.put(None)


class TestAuthenticateWebsocket:
    """Test cases for token checks on the socket."""

    @pytest.mark.asyncio
    async def test_missing_token(self, session_factory):
        assert await authenticate_websocket(None, session_factory) is None

    @pytest.mark.asyncio
    async def test_bad_token(self, session_factory):
        assert await authenticate_websocket("garbage", session_factory) is None

    @pytest.mark.asyncio
    async def test_valid_token(self, session_factory, ada):
        profile = await authenticate_websocket(make_token(ada.auth_subject), session_factory)
        assert profile.id == ada.id

    @pytest.mark.asyncio
    async def test_rejected_socket_is_closed(self, session_factory, feed):
        websocket = FakeWebSocket()

        await connect_websocket(websocket, token=None, session_factory=session_factory, feed=feed)

        assert websocket.closed_with == WS_POLICY_VIOLATION
        assert websocket.accepted is False


class TestSessionSocket:
    """Test cases for frames exchanged over the socket."""

    @pytest.mark.asyncio
    async def test_initial_snapshot_is_idle(self, socket_for, ada):
        websocket = await socket_for(ada)

        assert websocket.snapshots()[0]["state"] == "idle"
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_submit_then_cancel(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put(
            {"action": "submit", "data": {"nickname": "Ada", "location": "NYC", "interests": ["Python"]}}
        )
        await wait_for(lambda: websocket.snapshots()[-1]["state"] == "searching")
        await websocket.incoming.put({"action": "cancel"})
        await wait_for(lambda: websocket.snapshots()[-1]["state"] == "idle")

        assert websocket.snapshots()[-1]["event"] == "cancelled"
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_match_and_chat_between_two_sockets(self, socket_for, ada, bo):
        ada_socket = await socket_for(ada)
        bo_socket = await socket_for(bo)

        await ada_socket.incoming.put(
            {"action": "submit", "data": {"nickname": "Ada", "location": "NYC", "interests": ["Python"]}}
        )
        await wait_for(lambda: ada_socket.snapshots()[-1]["state"] == "searching")
        await bo_socket.incoming.put(
            {"action": "submit", "data": {"nickname": "Bo", "location": "NYC", "interests": ["Python"]}}
        )
        await wait_for(lambda: ada_socket.snapshots()[-1]["state"] == "connected")
        await wait_for(lambda: bo_socket.snapshots()[-1]["state"] == "connected")

        await ada_socket.incoming.put({"action": "send", "data": {"content": "hi Bo"}})
        await wait_for(
            lambda: [m["content"] for m in bo_socket.snapshots()[-1]["messages"]] == ["hi Bo"]
        )

        assert bo_socket.snapshots()[-1]["peer"]["id"] == str(ada.id)
        await disconnect(ada_socket)
        await disconnect(bo_socket)

    @pytest.mark.asyncio
    async def test_validation_error_frame(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put(
            {"action": "submit", "data": {"nickname": "Ada", "location": " ", "interests": ["Python"]}}
        )
        await wait_for(lambda: websocket.errors())

        error = websocket.errors()[0]
        assert error["action"] == "submit"
        assert error["error_code"] == "VALIDATION_ERROR"
        assert error["details"] == {"field": "location"}
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_malformed_payload(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put({"action": "send", "data": {}})
        await wait_for(lambda: websocket.errors())

        error = websocket.errors()[0]
        assert error["error_code"] == "VALIDATION_ERROR"
        assert error["details"][0]["loc"] == ["content"]
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_non_json_frame_keeps_session_open(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put(json.JSONDecodeError("Expecting value", "hello", 0))
        await websocket.incoming.put(
            {"action": "submit", "data": {"nickname": "Ada", "location": "NYC", "interests": ["Python"]}}
        )
        await wait_for(lambda: any(s["state"] == "searching" for s in websocket.snapshots()))

        error = websocket.errors()[0]
        assert error["error_code"] == "VALIDATION_ERROR"
        assert error["message"] == "Frames must be JSON text"
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_action_not_allowed_in_state(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put({"action": "end"})
        await wait_for(lambda: websocket.errors())

        assert websocket.errors()[0]["error_code"] == "INVALID_SESSION_TRANSITION"
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_unknown_action(self, socket_for, ada):
        websocket = await socket_for(ada)

        await websocket.incoming.put({"action": "dance"})
        await wait_for(lambda: websocket.errors())

        assert websocket.errors()[0]["error_code"] == "UNKNOWN_ACTION"
        await disconnect(websocket)

    @pytest.mark.asyncio
    async def test_disconnect_keeps_request(self, socket_for, session_factory, feed, ada):
        websocket = await socket_for(ada)
        await websocket.incoming.put(
            {"action": "submit", "data": {"nickname": "Ada", "location": "LA", "interests": ["Go"]}}
        )
        await wait_for(lambda: websocket.snapshots()[-1]["state"] == "searching")

        await disconnect(websocket)
        await asyncio.sleep(0.05)

        restored = SessionController(session_factory, feed, ada.id, search_timeout=30)
        snapshot = await restored.start()
        assert snapshot.state.value == "searching"
        await restored.close()
