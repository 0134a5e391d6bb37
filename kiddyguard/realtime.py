"""In-process change feed and typed notification channels.

Architecture
------------
``ChangeFeed`` is the storage change-feed primitive. Attached to a
``sessionmaker`` it records ORM inserts/updates at flush time and publishes
them as :class:`ChangeEvent` objects once the transaction commits; rolled back
changes are never published. Statements that bypass the unit of work (bulk
``UPDATE`` through ``session.execute``) report their effect through
:func:`queue_change`.

``NotificationChannel`` is one logical subscription scoped by event kind,
entity (table) name and an optional equality filter on the payload.
``subscribe()`` starts an asyncio task that delivers matching events to the
callback in arrival order; ``Subscription.unsubscribe()`` is idempotent and
releases the feed registration.

``publish`` may be called from any thread (FastAPI runs sync dependencies in a
worker pool); events are handed to each subscriber's loop with
``call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy import event, inspect as sa_inspect
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger(__name__)

_PENDING_KEY = "kiddyguard_pending_changes"


class EventKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    event_kind: EventKind
    entity: str
    payload: dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


EventCallback = Callable[[ChangeEvent], Awaitable[None] | None]


def snapshot(obj: Any) -> dict[str, Any]:
    """Column values of an ORM instance as a plain dict (the new-record snapshot)."""
    mapper = sa_inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


def queue_change(session: Session, kind: EventKind | str, entity: str, payload: dict[str, Any]) -> None:
    """Record a change made outside the unit of work; published on commit."""
    session.info.setdefault(_PENDING_KEY, []).append(ChangeEvent(EventKind(kind), entity, dict(payload)))


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------


class _Registration:
    def __init__(self, channel: NotificationChannel, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        self.channel = channel
        self.loop = loop
        self.queue = queue


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._registrations: list[_Registration] = []
        self._attached: list[Any] = []

    # -- storage side -------------------------------------------------------

    def attach(self, target: sessionmaker | type[Session]) -> None:
        """Publish committed changes made through sessions created by *target*."""
        if any(t is target for t in self._attached):
            return
        event.listen(target, "after_flush", self._after_flush)
        event.listen(target, "after_commit", self._after_commit)
        event.listen(target, "after_transaction_end", self._after_transaction_end)
        self._attached.append(target)

    def detach(self, target: sessionmaker | type[Session]) -> None:
        if not any(t is target for t in self._attached):
            return
        event.remove(target, "after_flush", self._after_flush)
        event.remove(target, "after_commit", self._after_commit)
        event.remove(target, "after_transaction_end", self._after_transaction_end)
        self._attached = [t for t in self._attached if t is not target]

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending = session.info.setdefault(_PENDING_KEY, [])
        for obj in session.new:
            pending.append(ChangeEvent(EventKind.INSERT, obj.__tablename__, snapshot(obj)))
        for obj in session.dirty:
            if session.is_modified(obj, include_collections=False):
                pending.append(ChangeEvent(EventKind.UPDATE, obj.__tablename__, snapshot(obj)))

    def _after_commit(self, session: Session) -> None:
        for change in session.info.pop(_PENDING_KEY, []):
            self.publish(change)

    def _after_transaction_end(self, session: Session, transaction: Any) -> None:
        # anything still pending when the outermost transaction ends was rolled back
        if transaction.parent is None:
            session.info.pop(_PENDING_KEY, None)

    # -- subscriber side ----------------------------------------------------

    def publish(self, change: ChangeEvent) -> int:
        """Hand *change* to every matching subscription; returns the number of deliveries."""
        with self._lock:
            registrations = list(self._registrations)
        delivered = 0
        for reg in registrations:
            if not reg.channel.matches(change):
                continue
            try:
                reg.loop.call_soon_threadsafe(reg.queue.put_nowait, change)
                delivered += 1
            except RuntimeError:
                log.warning("Dropping subscription on %s: event loop is closed", reg.channel.entity)
                self._unregister(reg)
        return delivered

    def _register(self, reg: _Registration) -> None:
        with self._lock:
            self._registrations.append(reg)

    def _unregister(self, reg: _Registration) -> None:
        with self._lock:
            self._registrations = [r for r in self._registrations if r is not reg]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._registrations)


default_feed = ChangeFeed()


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class Subscription:
    """Live handle returned by :meth:`NotificationChannel.subscribe`."""

    def __init__(self, feed: ChangeFeed, registration: _Registration, callback: EventCallback):
        self._feed = feed
        self._registration = registration
        self._callback = callback
        self._closed = False
        self._task = registration.loop.create_task(self._deliver())

    @property
    def active(self) -> bool:
        return not self._closed

    async def _deliver(self) -> None:
        queue = self._registration.queue
        channel = self._registration.channel
        while True:
            change = await queue.get()
            try:
                result = self._callback(change)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Callback failed for %s %s event", channel.entity, change.event_kind.value)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every event published so far has been handled."""
        # one loop pass so call_soon_threadsafe hand-offs land in the queue
        await asyncio.sleep(0)
        if not self._closed:
            await self._registration.queue.join()

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._unregister(self._registration)
        self._task.cancel()

    async def aclose(self) -> None:
        self.unsubscribe()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class NotificationChannel:
    def __init__(
        self,
        feed: ChangeFeed,
        event_kind: EventKind | str,
        entity: str,
        filter: dict[str, Any] | None = None,
    ):
        self.feed = feed
        self.event_kind = EventKind(event_kind)
        self.entity = entity
        self.filter = dict(filter or {})

    def matches(self, change: ChangeEvent) -> bool:
        if change.event_kind is not self.event_kind or change.entity != self.entity:
            return False
        return all(change.payload.get(key) == value for key, value in self.filter.items())

    def subscribe(self, callback: EventCallback) -> Subscription:
        """Start delivering matching events to *callback*. Must run inside an event loop."""
        loop = asyncio.get_running_loop()
        registration = _Registration(self, loop, asyncio.Queue())
        self.feed._register(registration)
        log.debug("Subscribed to %s %s filter=%s", self.event_kind.value, self.entity, self.filter)
        return Subscription(self.feed, registration, callback)
