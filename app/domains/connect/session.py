"""Session controller: one user's live view of the Connect flow.

The controller owns the local state (idle, searching, connected), the search
timeout, and the message stream of the current pairing. It never trusts a
notification payload for state: every change on the user's request or
connection only triggers a re-read of the store, and the transition follows
from what the store says.

States move through a pure transition table so the rules can be tested
without a database::

    idle      --submitted-->  searching
    searching --matched-->    connected
    searching --timed_out-->  idle        (request cancelled, notice shown)
    searching --cancelled-->  idle
    connected --ended-->      idle        (this user ended it)
    connected --peer_ended--> idle        (the other user ended it)
    connected --requeued-->   searching   (ended, request back to searching)
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from typing import Any
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.domains.connect.matchmaker import Matchmaker
from app.domains.connect.messages import MessageLog
from app.domains.connect.registry import ConnectionStatus, RequestRegistry
from app.domains.profile.service import ProfileService
from app.exceptions.base import BaseAppException, TransientStoreError
from app.exceptions.connect import InvalidSessionTransitionError
from app.schemas.connect import (
    ActiveConnectionResponse,
    ConnectionRequestResponse,
    MessageResponse,
    PeerProfile,
)
from app.services.change_feed import (
    ChangeEvent,
    ChangeFeed,
    EventType,
    Subscription,
    any_column_equals,
    column_equals,
)
from models import ActiveConnection, ConnectionRequest

logger = logging.getLogger(__name__)

TIMEOUT_NOTICE = (
    "No connections found after {seconds:g} seconds. Your request has been cancelled. "
    "You can try again with different interests or at a different time."
)

# Delay before retrying a timeout whose cancellation hit a store failure
TIMEOUT_RETRY_SECONDS = 5.0


class SessionState(str, Enum):
    """Session state enumeration."""

    IDLE = "idle"
    SEARCHING = "searching"
    CONNECTED = "connected"


class SessionEvent(str, Enum):
    """Session event enumeration."""

    SUBMITTED = "submitted"
    RESUMED = "resumed"
    MATCHED = "matched"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    REQUEST_LOST = "request_lost"
    ENDED = "ended"
    PEER_ENDED = "peer_ended"
    REQUEUED = "requeued"


TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.IDLE, SessionEvent.SUBMITTED): SessionState.SEARCHING,
    # Restoring what the store already holds when a session starts
    (SessionState.IDLE, SessionEvent.RESUMED): SessionState.SEARCHING,
    (SessionState.IDLE, SessionEvent.MATCHED): SessionState.CONNECTED,
    (SessionState.SEARCHING, SessionEvent.MATCHED): SessionState.CONNECTED,
    (SessionState.SEARCHING, SessionEvent.CANCELLED): SessionState.IDLE,
    (SessionState.SEARCHING, SessionEvent.TIMED_OUT): SessionState.IDLE,
    (SessionState.SEARCHING, SessionEvent.REQUEST_LOST): SessionState.IDLE,
    (SessionState.CONNECTED, SessionEvent.ENDED): SessionState.IDLE,
    (SessionState.CONNECTED, SessionEvent.PEER_ENDED): SessionState.IDLE,
    (SessionState.CONNECTED, SessionEvent.REQUEUED): SessionState.SEARCHING,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Next state for ``event`` in ``state``.

    Raises:
        InvalidSessionTransitionError: The pair is not in the table
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidSessionTransitionError(state.value, event.value) from None


def can_transition(state: SessionState, event: SessionEvent) -> bool:
    return (state, event) in TRANSITIONS


class SearchTimer:
    """Cancellable one-shot timer.

    The callback runs at most once. Cancelling after it fired is a no-op, and
    once cancelled it never fires.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.callback = callback
        self._task: asyncio.Task | None = None
        self._fired = False
        self._cancelled = False

    def start(self) -> "SearchTimer":
        self._task = asyncio.get_running_loop().create_task(self._run(), name="search-timer")
        return self

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return self._task is not None and not (self._fired or self._cancelled)

    def cancel(self) -> bool:
        """Stop the timer.

        Returns:
            True if this call prevented the callback, False if it had already
            fired or been cancelled
        """
        if self._fired or self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
        return True

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        if self._cancelled:
            return
        self._fired = True
        await self.callback()


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of a session handed to listeners."""

    state: SessionState = SessionState.IDLE
    event: SessionEvent | None = None
    request: ConnectionRequestResponse | None = None
    connection: ActiveConnectionResponse | None = None
    peer: PeerProfile | None = None
    messages: tuple[MessageResponse, ...] = field(default_factory=tuple)
    has_more_messages: bool = False
    notice: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return jsonable_encoder(
            {
                "state": self.state.value,
                "event": self.event.value if self.event else None,
                "request": self.request.model_dump() if self.request else None,
                "connection": self.connection.model_dump() if self.connection else None,
                "peer": self.peer.model_dump() if self.peer else None,
                "messages": [message.model_dump() for message in self.messages],
                "has_more_messages": self.has_more_messages,
                "notice": self.notice,
                "error": self.error,
            }
        )


SnapshotListener = Callable[[SessionSnapshot], Awaitable[None] | None]


class SessionController:
    """Drives one user's Connect session against the shared store.

    Every store operation runs in its own short-lived database session taken
    from ``session_factory``, so each re-read sees the latest committed rows.
    Transitions are serialised with a lock; timer expiry, notifications and
    user actions all go through it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        feed: ChangeFeed,
        user_id: UUID,
        search_timeout: float | None = None,
        page_size: int | None = None,
        requeue_on_end: bool | None = None,
        auto_match: bool = False,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.user_id = user_id
        self.search_timeout = search_timeout or settings.connect_search_timeout_seconds
        self.page_size = page_size or settings.connect_messages_page_size
        self.requeue_on_end = requeue_on_end
        self.auto_match = auto_match

        self._lock = asyncio.Lock()
        self._snapshot = SessionSnapshot()
        self._listeners: list[SnapshotListener] = []
        self._timer: SearchTimer | None = None
        self._timer_generation = 0
        self._subscriptions: list[Subscription] = []
        self._message_subscription: Subscription | None = None
        self._listener_tasks: set[asyncio.Future] = set()
        self._closed = False

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def timer(self) -> SearchTimer | None:
        return self._timer

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> SessionSnapshot:
        """Subscribe to this user's rows and load the current state."""
        self._subscriptions = [
            self.feed.subscribe(
                ActiveConnection.__tablename__,
                self._on_change,
                predicate=any_column_equals(("user1_id", "user2_id"), self.user_id),
                name=f"connections:{self.user_id}",
            ),
            self.feed.subscribe(
                ConnectionRequest.__tablename__,
                self._on_change,
                predicate=column_equals("user_id", self.user_id),
                event_types={EventType.UPDATE, EventType.DELETE},
                name=f"requests:{self.user_id}",
            ),
        ]
        await self.refresh()
        return self._snapshot

    async def refresh(self) -> SessionSnapshot:
        """Re-read the store and apply whatever transition it implies."""
        async with self._lock:
            await self._reconcile()
        return self._snapshot

    async def submit(
        self, nickname: str, location: str, interests: Iterable[str]
    ) -> SessionSnapshot:
        """Open a request and start the search timeout.

        Store and validation errors propagate; the session stays idle.
        """
        async with self._lock:
            next_state = transition(self.state, SessionEvent.SUBMITTED)
            async with self.session_factory() as db:
                request = await RequestRegistry(db, self.feed).create_request(
                    self.user_id, nickname, location, interests
                )
                request_view = ConnectionRequestResponse.model_validate(request)

            self._set(
                next_state,
                SessionEvent.SUBMITTED,
                request=request_view,
                notice=None,
                error=None,
            )
            self._start_timer()

            if self.auto_match:
                await self._try_match(request_view.id)

        return self._snapshot

    async def cancel(self) -> SessionSnapshot:
        """Withdraw the open request."""
        async with self._lock:
            next_state = transition(self.state, SessionEvent.CANCELLED)
            request = self._snapshot.request
            async with self.session_factory() as db:
                await RequestRegistry(db, self.feed).cancel_request(request.id, self.user_id)

            self._cancel_timer()
            self._set(next_state, SessionEvent.CANCELLED, request=None, notice=None, error=None)
        return self._snapshot

    async def end(self) -> SessionSnapshot:
        """End the live connection on behalf of this user."""
        async with self._lock:
            transition(self.state, SessionEvent.ENDED)
            connection = self._snapshot.connection
            async with self.session_factory() as db:
                registry = RequestRegistry(db, self.feed, requeue_on_end=self.requeue_on_end)
                await registry.end_connection(connection.id, self.user_id)
                status = await registry.get_status(self.user_id)
                request_view = self._request_view(status.request)

            self._leave_connection()
            if status.is_searching:
                self._set(
                    transition(self.state, SessionEvent.REQUEUED),
                    SessionEvent.REQUEUED,
                    request=request_view,
                    error=None,
                )
                self._start_timer()
            else:
                self._set(
                    transition(self.state, SessionEvent.ENDED),
                    SessionEvent.ENDED,
                    request=None,
                    error=None,
                )
        return self._snapshot

    async def send(self, content: str) -> MessageResponse:
        """Send a message to the peer.

        The message is not added locally; it arrives through the message
        subscription like the peer's messages. On failure nothing is sent and
        the caller keeps its text.
        """
        if self.state != SessionState.CONNECTED:
            raise InvalidSessionTransitionError(self.state.value, "send")
        connection = self._snapshot.connection
        async with self.session_factory() as db:
            message = await MessageLog(db, self.feed, page_size=self.page_size).append(
                connection.id, self.user_id, content
            )
            return MessageResponse.model_validate(message)

    async def load_more(self) -> tuple[MessageResponse, ...]:
        """Prepend the page of messages older than the oldest one loaded."""
        async with self._lock:
            if self.state != SessionState.CONNECTED:
                raise InvalidSessionTransitionError(self.state.value, "load_more")
            messages = self._snapshot.messages
            if not messages:
                return ()

            async with self.session_factory() as db:
                page = await MessageLog(db, self.feed, page_size=self.page_size).fetch_page(
                    self._snapshot.connection.id,
                    before_message_id=messages[0].id,
                    user_id=self.user_id,
                )
                older = tuple(MessageResponse.model_validate(m) for m in page["items"])

            self._set(
                self.state,
                None,
                messages=older + messages,
                has_more_messages=page["has_more"],
            )
            return older

    async def close(self) -> None:
        """Release timer and subscriptions. The stored request is left as is.

        Waits for an operation already in flight; once it resumes it sees the
        controller closed and neither arms a timer nor keeps a subscription.
        """
        self._closed = True
        async with self._lock:
            self._cancel_timer()
            self._leave_connection()
            for subscription in self._subscriptions:
                subscription.unsubscribe()
            self._subscriptions = []
            self._listeners = []

    @property
    def closed(self) -> bool:
        return self._closed

    # Notification handlers
    async def _on_change(self, _event: ChangeEvent) -> None:
        if self._closed:
            return
        await self.refresh()

    async def _on_message(self, message: MessageResponse) -> None:
        async with self._lock:
            connection = self._snapshot.connection
            if self.state != SessionState.CONNECTED or connection is None:
                return
            if message.connection_id != connection.id:
                return
            known = self._snapshot.messages
            # Already part of the page loaded while subscribing
            if known and message.id <= known[-1].id:
                return
            self._set(self.state, None, messages=known + (message,))

    async def _on_timeout(self, generation: int) -> None:
        async with self._lock:
            if self._closed:
                return
            if generation != self._timer_generation or self.state != SessionState.SEARCHING:
                return

            try:
                async with self.session_factory() as db:
                    registry = RequestRegistry(db, self.feed)
                    status = await registry.get_status(self.user_id)
                    if status.connection is None and status.request is not None:
                        await registry.cancel_request(status.request.id, self.user_id)
            except TransientStoreError as e:
                logger.error(f"Search timeout for {self.user_id} could not cancel: {e.message}")
                self._set(self.state, None, error=e.message)
                self._start_timer(TIMEOUT_RETRY_SECONDS)
                return

            if status.connection is not None:
                # The match landed before its notification did
                await self._enter_connection(status)
                return

            self._timer = None
            logger.info(f"Search for {self.user_id} timed out after {self.search_timeout}s")
            self._set(
                transition(self.state, SessionEvent.TIMED_OUT),
                SessionEvent.TIMED_OUT,
                request=None,
                notice=TIMEOUT_NOTICE.format(seconds=self.search_timeout),
                error=None,
            )

    # Internals; callers hold the lock
    async def _reconcile(self) -> None:
        try:
            async with self.session_factory() as db:
                status = await RequestRegistry(db, self.feed).get_status(self.user_id)
        except TransientStoreError as e:
            # Reads are retried by the next notification or poll
            logger.warning(f"Status refresh for {self.user_id} failed: {e.message}")
            self._set(self.state, None, error=e.message)
            return

        if self._closed:
            return

        state = self.state
        connection = status.connection

        if connection is not None:
            current = self._snapshot.connection
            if state == SessionState.CONNECTED and current and current.id == connection.id:
                return
            if status.request is None:
                # Matched after our request was cancelled or timed out
                await self._discard_connection(connection)
                return
            if state == SessionState.CONNECTED:
                self._leave_connection()
            await self._enter_connection(status)
            return

        if state == SessionState.CONNECTED:
            self._leave_connection()
            if status.is_searching:
                self._set(
                    transition(state, SessionEvent.REQUEUED),
                    SessionEvent.REQUEUED,
                    request=self._request_view(status.request),
                )
                self._start_timer()
            else:
                self._set(
                    transition(state, SessionEvent.PEER_ENDED),
                    SessionEvent.PEER_ENDED,
                    request=None,
                )
            return

        if state == SessionState.SEARCHING:
            if status.request is None:
                self._cancel_timer()
                self._set(
                    transition(state, SessionEvent.REQUEST_LOST),
                    SessionEvent.REQUEST_LOST,
                    request=None,
                )
            return

        # Idle
        if status.is_searching:
            self._set(
                transition(state, SessionEvent.RESUMED),
                SessionEvent.RESUMED,
                request=self._request_view(status.request),
            )
            self._start_timer()
        elif status.request is not None:
            # Marked connected but the connection is gone
            await self._drop_stale_request(status.request)

    async def _enter_connection(self, status: ConnectionStatus) -> None:
        connection = status.connection
        peer_id = connection.peer_of(self.user_id)
        connection_view = ActiveConnectionResponse.model_validate(connection)

        # Subscribe before loading history so nothing falls between the two
        subscription = MessageLog(None, self.feed).subscribe(connection.id, self._on_message)
        try:
            async with self.session_factory() as db:
                peer = await self._load_peer(db, peer_id)
                page = await MessageLog(db, self.feed, page_size=self.page_size).fetch_page(
                    connection.id
                )
                messages = tuple(MessageResponse.model_validate(m) for m in page["items"])
        except TransientStoreError as e:
            subscription.unsubscribe()
            logger.warning(f"Loading connection {connection.id} failed: {e.message}")
            self._set(self.state, None, error=e.message)
            return

        if self._closed:
            subscription.unsubscribe()
            return

        self._cancel_timer()
        self._message_subscription = subscription
        logger.info(f"User {self.user_id} connected with {peer_id}")
        self._set(
            transition(self.state, SessionEvent.MATCHED),
            SessionEvent.MATCHED,
            request=self._request_view(status.request),
            connection=connection_view,
            peer=peer,
            messages=messages,
            has_more_messages=page["has_more"],
            notice=None,
            error=None,
        )

    async def _load_peer(self, db, peer_id: UUID) -> PeerProfile:
        profile = await ProfileService(db).get_profile(peer_id)
        peer_request = await RequestRegistry(db, self.feed).get_request_for_user(peer_id)

        data: dict[str, Any] = {"id": peer_id}
        if profile is not None:
            data.update(
                name=profile.name,
                nickname=profile.nickname,
                location=profile.location,
                interests=list(profile.interests or []),
                avatar_url=profile.avatar_url,
            )
        if peer_request is not None:
            # What the peer typed for this search wins over profile defaults
            data.update(
                nickname=peer_request.nickname,
                location=peer_request.location,
                interests=list(peer_request.interests or []),
            )
        return PeerProfile(**data)

    async def _discard_connection(self, connection: ActiveConnection) -> None:
        logger.warning(
            f"Ignoring connection {connection.id} for {self.user_id}: request no longer exists"
        )
        try:
            async with self.session_factory() as db:
                # The peer never got a real session; put them back to searching
                await RequestRegistry(db, self.feed).end_connection(
                    connection.id, self.user_id, requeue=True
                )
        except BaseAppException as e:
            logger.error(f"Failed to discard connection {connection.id}: {e.message}")

    async def _drop_stale_request(self, request: ConnectionRequest) -> None:
        try:
            async with self.session_factory() as db:
                await RequestRegistry(db, self.feed).cancel_request(request.id, self.user_id)
        except BaseAppException as e:
            logger.error(f"Failed to drop stale request {request.id}: {e.message}")

    async def _try_match(self, request_id: UUID) -> None:
        try:
            async with self.session_factory() as db:
                await Matchmaker(db, self.feed).match_request(request_id)
        except TransientStoreError as e:
            # The periodic sweep will try again
            logger.warning(f"Inline matching for {request_id} failed: {e.message}")

    def _leave_connection(self) -> None:
        if self._message_subscription is not None:
            self._message_subscription.unsubscribe()
            self._message_subscription = None

    def _start_timer(self, delay: float | None = None) -> None:
        self._cancel_timer()
        if self._closed:
            return
        self._timer_generation += 1
        self._timer = SearchTimer(
            delay if delay is not None else self.search_timeout,
            partial(self._on_timeout, self._timer_generation),
        ).start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @staticmethod
    def _request_view(request: ConnectionRequest | None) -> ConnectionRequestResponse | None:
        return ConnectionRequestResponse.model_validate(request) if request is not None else None

    def _set(self, state: SessionState, event: SessionEvent | None, **changes: Any) -> None:
        if state != SessionState.CONNECTED:
            changes.setdefault("connection", None)
            changes.setdefault("peer", None)
            changes.setdefault("messages", ())
            changes.setdefault("has_more_messages", False)
        self._snapshot = replace(self._snapshot, state=state, event=event, **changes)
        if event is not None:
            logger.debug(f"Session {self.user_id}: {event.value} -> {state.value}")
        for listener in list(self._listeners):
            try:
                result = listener(self._snapshot)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                logger.exception(f"Session listener for {self.user_id} failed")

    def _listener_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session listener for {self.user_id} failed: {task.exception()!r}")
