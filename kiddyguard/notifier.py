"""Parent-side review notifier.

A ``ReviewNotifier`` watches two channels for one family:

* ``UPDATE`` on ``screenings`` filtered by ``family_id`` -> refresh only;
* ``INSERT`` on ``clinical_reviews`` (unfiltered, the review row carries no
  family id) -> verify the review's screening belongs to the family, then
  emit exactly one :class:`UserNotification` per review id and refresh.

Verification fetches are bounded by ``verify_timeout``; a fetch that fails,
times out or returns another family's screening discards the event.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import sessionmaker

from kiddyguard.config import get_settings
from kiddyguard.errors import ScopeMismatch
from kiddyguard.models import ClinicalReview, Screening
from kiddyguard.realtime import ChangeEvent, ChangeFeed, EventKind, NotificationChannel, Subscription
from kiddyguard.schemas import UserNotification
from kiddyguard.utils import validate_uuid

log = logging.getLogger(__name__)

ScreeningFetcher = Callable[[str], Awaitable[Any]]
NotifyCallback = Callable[[UserNotification], Awaitable[None] | None]
RefreshCallback = Callable[[], Awaitable[None] | None]


class BoundedIdSet:
    """Insertion-ordered set that forgets its oldest ids past ``capacity``."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item: str) -> None:
        if item in self._items:
            return
        self._items[item] = None
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()


def make_screening_fetcher(session_factory: sessionmaker) -> ScreeningFetcher:
    """Async fetcher returning ``{"id", "family_id", "child_name"}`` or ``None``."""

    def _load(screening_id: str) -> dict[str, Any] | None:
        with session_factory() as session:
            screening = session.get(Screening, screening_id)
            if screening is None:
                return None
            return {"id": screening.id, "family_id": screening.family_id, "child_name": screening.child_name}

    async def fetch(screening_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(_load, screening_id)

    return fetch


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class ReviewNotifier:
    def __init__(
        self,
        feed: ChangeFeed,
        family_id: str,
        fetch_screening: ScreeningFetcher,
        notify: NotifyCallback,
        refresh: RefreshCallback | None = None,
        *,
        verify_timeout: float | None = None,
        dedup_capacity: int | None = None,
    ):
        settings = get_settings()
        self.feed = feed
        self.family_id = validate_uuid(family_id, "family ID")
        self._fetch_screening = fetch_screening
        self._notify = notify
        self._refresh = refresh
        self.verify_timeout = verify_timeout if verify_timeout is not None else settings.verify_timeout_seconds
        self.processed = BoundedIdSet(dedup_capacity or settings.dedup_capacity)
        self._subscriptions: list[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        """Subscribe both channels. Must be called from the event loop."""
        if self._subscriptions:
            return
        screenings = NotificationChannel(
            self.feed, EventKind.UPDATE, Screening.__tablename__, {"family_id": self.family_id},
        )
        reviews = NotificationChannel(self.feed, EventKind.INSERT, ClinicalReview.__tablename__)
        self._subscriptions = [
            screenings.subscribe(self.handle_screening_updated),
            reviews.subscribe(self.handle_review_inserted),
        ]
        log.debug("Review notifier started for family %s", self.family_id)

    async def drain(self) -> None:
        for sub in list(self._subscriptions):
            await sub.drain()

    # -- handlers -----------------------------------------------------------

    async def handle_screening_updated(self, change: ChangeEvent) -> None:
        await self._do_refresh()

    async def handle_review_inserted(self, change: ChangeEvent) -> None:
        review_id = change.payload.get("review_id")
        screening_id = change.payload.get("screening_id")
        if not review_id or not screening_id:
            log.debug("Ignoring review event without ids: %s", change.payload)
            await self._do_refresh()
            return
        if review_id in self.processed:
            return

        try:
            screening = await self._verify_scope(screening_id)
        except ScopeMismatch as exc:
            log.debug("Discarding review %s: %s", review_id, exc.message)
            screening = None

        if screening is not None:
            self.processed.add(review_id)
            reviewer = change.payload.get("reviewed_by") or get_settings().default_reviewer_name
            child_name = _field(screening, "child_name") or "your child"
            try:
                await _maybe_await(self._notify(UserNotification(
                    title="New Clinical Report Ready!",
                    description=f"{reviewer} has finalized {child_name}'s developmental assessment.",
                    screening_id=screening_id,
                    review_id=review_id,
                    link=f"/dashboard/report/{screening_id}",
                )))
            except Exception:
                log.exception("Notify callback failed for review %s", review_id)
        await self._do_refresh()

    async def _verify_scope(self, screening_id: str) -> Any:
        try:
            screening = await asyncio.wait_for(self._fetch_screening(screening_id), self.verify_timeout)
        except asyncio.TimeoutError as exc:
            raise ScopeMismatch(f"verification of screening {screening_id} timed out") from exc
        except Exception as exc:
            raise ScopeMismatch(f"verification of screening {screening_id} failed: {exc}") from exc
        if screening is None:
            raise ScopeMismatch(f"screening {screening_id} not found")
        if _field(screening, "family_id") != self.family_id:
            raise ScopeMismatch(f"screening {screening_id} belongs to another family")
        return screening

    async def _do_refresh(self) -> None:
        if self._refresh is None:
            return
        try:
            await _maybe_await(self._refresh())
        except Exception:
            log.exception("Refresh callback failed for family %s", self.family_id)

    # -- teardown -----------------------------------------------------------

    def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self.processed.clear()

    def rescope(self, family_id: str) -> None:
        """Switch to another family: tear down, then resubscribe."""
        family_id = validate_uuid(family_id, "family ID")
        self.close()
        self.family_id = family_id
        self.start()

    async def __aenter__(self) -> ReviewNotifier:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
