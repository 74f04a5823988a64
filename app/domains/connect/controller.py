"""Connect API controller: requests, connections, messages and the live socket."""

import asyncio
import logging
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Path,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.dependencies import get_current_user, resolve_profile, validate_token, verifier
from app.database import get_db, get_session_factory
from app.domains.connect.matchmaker import Matchmaker
from app.domains.connect.messages import MessageLog
from app.domains.connect.registry import RequestRegistry
from app.domains.connect.session import SessionController, SessionSnapshot
from app.domains.profile.service import ProfileService
from app.exceptions.base import BaseAppException, TransientStoreError
from app.schemas.base import ResponseSchema
from app.schemas.connect import (
    ActiveConnectionResponse,
    ConnectionRequestCreate,
    ConnectionRequestResponse,
    ConnectionStatusResponse,
    MessageCreate,
    MessagePageResponse,
    MessageResponse,
    PeerProfile,
)
from app.services.change_feed import ChangeFeed, get_change_feed
from models import Profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connect", tags=["connect"])

# WebSocket close code for a rejected token (policy violation)
WS_POLICY_VIOLATION = 1008


@router.post(
    "/requests",
    response_model=ResponseSchema,
    status_code=201,
    dependencies=[Depends(validate_token)],
)
async def create_connection_request(
    _request: Request,
    request_data: ConnectionRequestCreate,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Open a searching request for the current user."""
    registry = RequestRegistry(db, feed)
    connection_request = await registry.create_request(
        current_user.id,
        request_data.nickname,
        request_data.location,
        request_data.interests,
    )

    if settings.connect_auto_match:
        try:
            await Matchmaker(db, feed).match_request(connection_request.id)
        except TransientStoreError as e:
            logger.warning(f"Inline matching failed, leaving it to the sweep: {e.message}")
        connection_request = await registry.get_request(connection_request.id) or connection_request

    return ResponseSchema(
        status="success",
        message="Connection request created successfully",
        data=ConnectionRequestResponse.model_validate(connection_request).model_dump(mode="json"),
    )


@router.delete(
    "/requests/{request_id}",
    response_model=ResponseSchema,
    dependencies=[Depends(validate_token)],
)
async def cancel_connection_request(
    request_id: UUID = Path(..., description="Connection request ID"),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Cancel one of the current user's requests. Cancelling a gone request succeeds."""
    cancelled = await RequestRegistry(db, feed).cancel_request(request_id, current_user.id)
    return ResponseSchema(
        status="success",
        message=(
            "Connection request cancelled successfully"
            if cancelled
            else "Connection request already gone"
        ),
        data={"cancelled": cancelled},
    )


@router.get("/status", response_model=ResponseSchema, dependencies=[Depends(validate_token)])
async def get_connection_status(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Get the current user's request, connection and peer."""
    status = await RequestRegistry(db, feed).get_status(current_user.id)

    peer = None
    if status.connection is not None:
        peer_id = status.connection.peer_of(current_user.id)
        profile = await ProfileService(db).get_profile(peer_id)
        peer = PeerProfile.model_validate(profile) if profile else PeerProfile(id=peer_id)

    data = ConnectionStatusResponse(
        request=(
            ConnectionRequestResponse.model_validate(status.request) if status.request else None
        ),
        connection=(
            ActiveConnectionResponse.model_validate(status.connection)
            if status.connection
            else None
        ),
        peer=peer,
    )
    return ResponseSchema(
        status="success",
        message="Connection status retrieved successfully",
        data=data.model_dump(mode="json"),
    )


@router.delete(
    "/connections/{connection_id}",
    response_model=ResponseSchema,
    dependencies=[Depends(validate_token)],
)
async def end_connection(
    connection_id: UUID = Path(..., description="Connection ID"),
    requeue: bool | None = Query(None, description="Put both users back to searching"),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """End a connection. Ending one that is already gone succeeds."""
    ended = await RequestRegistry(db, feed).end_connection(
        connection_id, current_user.id, requeue=requeue
    )
    return ResponseSchema(
        status="success",
        message="Connection ended successfully" if ended else "Connection already ended",
        data={"ended": ended},
    )


@router.get(
    "/connections/{connection_id}/messages",
    response_model=ResponseSchema,
    dependencies=[Depends(validate_token)],
)
async def get_messages(
    connection_id: UUID = Path(..., description="Connection ID"),
    before: int | None = Query(None, ge=1, description="Only messages older than this id"),
    limit: int | None = Query(None, ge=1, le=200),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Get one page of messages, oldest first."""
    page = await MessageLog(db, feed).fetch_page(
        connection_id, before_message_id=before, limit=limit, user_id=current_user.id
    )
    return ResponseSchema(
        status="success",
        message="Messages retrieved successfully",
        data=MessagePageResponse.model_validate(page).model_dump(mode="json"),
    )


@router.post(
    "/connections/{connection_id}/messages",
    response_model=ResponseSchema,
    status_code=201,
    dependencies=[Depends(validate_token)],
)
async def send_message(
    message_data: MessageCreate,
    connection_id: UUID = Path(..., description="Connection ID"),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Send a message to the peer."""
    message = await MessageLog(db, feed).append(connection_id, current_user.id, message_data.content)
    return ResponseSchema(
        status="success",
        message="Message sent successfully",
        data=MessageResponse.model_validate(message).model_dump(mode="json"),
    )


async def authenticate_websocket(
    token: str | None, session_factory: async_sessionmaker
) -> Profile | None:
    """Resolve the socket's profile from the ``token`` query parameter."""
    if not token:
        return None
    try:
        payload = verifier.verify_token(token)
        async with session_factory() as db:
            return await resolve_profile(payload, db)
    except HTTPException as e:
        logger.info(f"WebSocket authentication rejected: {e.detail}")
        return None


class SessionSocket:
    """Bridges one WebSocket to one ``SessionController``.

    Snapshots are queued and written by a single sender task so that frames
    leave in the order the session produced them.
    """

    def __init__(self, websocket: WebSocket, controller: SessionController):
        self.websocket = websocket
        self.controller = controller
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._sender: asyncio.Task | None = None

    async def run(self) -> None:
        self.controller.add_listener(self._on_snapshot)
        self._sender = asyncio.create_task(self._send_loop())
        try:
            await self.controller.start()
            while True:
                try:
                    frame = await self.websocket.receive_json()
                except (ValueError, KeyError):
                    # Not JSON, or a binary frame; the session stays open
                    await self._send_error("VALIDATION_ERROR", "Frames must be JSON text")
                    continue
                await self.handle(frame)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket for {self.controller.user_id} disconnected")
        finally:
            await self.controller.close()
            self._sender.cancel()

    async def handle(self, frame: dict) -> None:
        action = frame.get("action") if isinstance(frame, dict) else None
        try:
            if action == "submit":
                data = ConnectionRequestCreate.model_validate(frame.get("data") or {})
                await self.controller.submit(data.nickname, data.location, data.interests)
            elif action == "cancel":
                await self.controller.cancel()
            elif action == "end":
                await self.controller.end()
            elif action == "send":
                data = MessageCreate.model_validate(frame.get("data") or {})
                await self.controller.send(data.content)
            elif action == "load_more":
                await self.controller.load_more()
            elif action == "refresh":
                await self.controller.refresh()
            else:
                await self._send_error("UNKNOWN_ACTION", f"Unknown action: {action}", action)
                return
        except BaseAppException as e:
            await self._send_error(e.error_code, e.message, action, e.details)
            return
        except PydanticValidationError as e:
            details = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            await self._send_error("VALIDATION_ERROR", "Invalid payload", action, details)
            return

        if action in ("send", "load_more", "refresh"):
            # Other actions already pushed a snapshot through the listener
            self._outbox.put_nowait(self._snapshot_frame(self.controller.snapshot))

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._outbox.put_nowait(self._snapshot_frame(snapshot))

    @staticmethod
    def _snapshot_frame(snapshot: SessionSnapshot) -> dict:
        return {"type": "snapshot", "data": snapshot.to_dict()}

    async def _send_error(self, code: str, message: str, action=None, details=None) -> None:
        self._outbox.put_nowait(
            {
                "type": "error",
                "action": action,
                "error_code": code,
                "message": message,
                "details": details,
            }
        )

    async def _send_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError):
                return


@router.websocket("/ws")
async def connect_websocket(
    websocket: WebSocket,
    token: str | None = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Live session: push snapshots, accept actions."""
    profile = await authenticate_websocket(token, session_factory)
    if profile is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    controller = SessionController(
        session_factory,
        feed,
        profile.id,
        auto_match=settings.connect_auto_match,
    )
    await SessionSocket(websocket, controller).run()
