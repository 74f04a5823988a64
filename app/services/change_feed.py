"""Row-level change notifications.

Services publish a ``ChangeEvent`` after every committed insert, update or
delete on the Connect tables. Consumers subscribe to one relation with a row
predicate and a set of event types, and receive matching events through an
async callback. Each subscription owns a queue and a delivery task, so events
reach one subscriber in the order they were published; nothing is ordered
across subscriptions.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Change event type enumeration."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_EVENTS = frozenset(EventType)


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change on a relation.

    ``new`` is the row after the change (absent for deletes) and ``old`` the
    row before it (absent for inserts). Rows are JSON-compatible dicts.
    """

    relation: str
    event_type: EventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    origin: str | None = None

    @property
    def row(self) -> dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "relation": self.relation,
            "event_type": self.event_type.value,
            "new": self.new,
            "old": self.old,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            relation=data["relation"],
            event_type=EventType(data["event_type"]),
            new=data.get("new"),
            old=data.get("old"),
            origin=data.get("origin"),
        )


RowPredicate = Callable[[dict[str, Any]], bool]
ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


def serialize_row(obj: Any, schema: Any) -> dict[str, Any]:
    """Dump an ORM object through a response schema into a JSON-compatible dict."""
    return jsonable_encoder(schema.model_validate(obj).model_dump())


def column_equals(column: str, value: Any) -> RowPredicate:
    """Match rows whose ``column`` equals ``value`` (compared as strings)."""
    expected = str(value)

    def predicate(row: dict[str, Any]) -> bool:
        return str(row.get(column)) == expected

    return predicate


def any_column_equals(columns: Iterable[str], value: Any) -> RowPredicate:
    """Match rows where any of ``columns`` equals ``value``."""
    expected = str(value)
    columns = tuple(columns)

    def predicate(row: dict[str, Any]) -> bool:
        return any(str(row.get(column)) == expected for column in columns)

    return predicate


@dataclass(eq=False)
class Subscription:
    """A live registration on a ``ChangeFeed``."""

    feed: "ChangeFeed"
    relation: str
    callback: ChangeCallback
    predicate: RowPredicate | None = None
    event_types: frozenset = ALL_EVENTS
    name: str | None = None
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue, init=False, repr=False)
    _task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False)

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._deliver(), name=f"subscription:{self.name or self.relation}"
        )

    @property
    def active(self) -> bool:
        return not self._closed

    def matches(self, event: ChangeEvent) -> bool:
        if self._closed or event.relation != self.relation:
            return False
        if event.event_type not in self.event_types:
            return False
        if self.predicate is None:
            return True
        # Updates match on either side so a row moving out of the filter is still seen
        return any(
            self.predicate(row) for row in (event.new, event.old) if row is not None
        )

    def enqueue(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def _deliver(self) -> None:
        while not self._closed:
            event = await self._queue.get()
            try:
                result = self.callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Subscriber {self.name or self.relation} failed on {event.event_type.value}"
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the callback."""
        if not self._closed:
            await self._queue.join()

    def unsubscribe(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.feed._remove(self)
        # Called from inside our own callback: let the loop exit on its own
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        logger.debug(f"Unsubscribed {self.name or self.relation}")


class ChangeFeed:
    """In-process publish/subscribe hub for row-level changes."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._forwarders: list[Callable[[ChangeEvent], Awaitable[None]]] = []

    def subscribe(
        self,
        relation: str,
        callback: ChangeCallback,
        predicate: RowPredicate | None = None,
        event_types: Iterable[EventType] | None = None,
        name: str | None = None,
    ) -> Subscription:
        """Register ``callback`` for changes on ``relation``.

        Must be called from inside a running event loop.
        """
        subscription = Subscription(
            feed=self,
            relation=relation,
            callback=callback,
            predicate=predicate,
            event_types=frozenset(event_types) if event_types else ALL_EVENTS,
            name=name,
        )
        subscription.start()
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed {name or relation} to {relation}")
        return subscription

    def add_forwarder(self, forwarder: Callable[[ChangeEvent], Awaitable[None]]) -> None:
        """Register a hook that receives every locally published event."""
        self._forwarders.append(forwarder)

    def remove_forwarder(self, forwarder: Callable[[ChangeEvent], Awaitable[None]]) -> None:
        if forwarder in self._forwarders:
            self._forwarders.remove(forwarder)

    async def publish(self, event: ChangeEvent, forward: bool = True) -> int:
        """Fan ``event`` out to matching subscriptions.

        Returns:
            Number of subscriptions the event was queued for
        """
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.enqueue(event)
                delivered += 1

        if forward:
            for forwarder in list(self._forwarders):
                try:
                    await forwarder(event)
                except Exception as e:
                    # Local subscribers already have the event; remote fan-out is best effort
                    logger.error(f"Failed to forward {event.relation} change: {str(e)}")

        return delivered

    async def drain(self) -> None:
        """Wait for every subscription to process what is queued so far."""
        for subscription in list(self._subscriptions):
            await subscription.drain()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


change_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return change_feed
