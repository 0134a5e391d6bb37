"""Tests for the change feed and notification channels."""
from __future__ import annotations

import threading

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kiddyguard.models import Base, Screening
from kiddyguard.realtime import ChangeEvent, ChangeFeed, EventKind, NotificationChannel, queue_change

FAMILY = "11111111-2222-3333-4444-555555555555"
OTHER_FAMILY = "99999999-8888-7777-6666-555555555555"


@pytest.fixture()
def feed():
    return ChangeFeed()


@pytest.fixture()
def session_factory(feed):
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    feed.attach(factory)
    yield factory
    feed.detach(factory)
    engine.dispose()


def _add_screening(session, family_id=FAMILY, name="Ayu") -> Screening:
    s = Screening(family_id=family_id, child_name=name, child_age_months=18)
    session.add(s)
    session.commit()
    return s


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_insert_published_after_commit(self, feed, session_factory):
        received: list[ChangeEvent] = []
        sub = NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(received.append)
        with session_factory() as session:
            s = _add_screening(session)
        await sub.drain()
        assert len(received) == 1
        assert received[0].event_kind is EventKind.INSERT
        assert received[0].payload["id"] == s.id
        assert received[0].payload["family_id"] == FAMILY
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_rollback_not_published(self, feed, session_factory):
        received = []
        sub = NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(received.append)
        with session_factory() as session:
            session.add(Screening(family_id=FAMILY, child_name="Ayu", child_age_months=18))
            session.flush()
            session.rollback()
        await sub.drain()
        assert received == []
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_update_filtered_by_family(self, feed, session_factory):
        received = []
        sub = NotificationChannel(
            feed, EventKind.UPDATE, "screenings", {"family_id": FAMILY},
        ).subscribe(received.append)
        with session_factory() as session:
            mine = _add_screening(session)
            theirs = _add_screening(session, family_id=OTHER_FAMILY)
            mine.status = "PENDING_REVIEW"
            theirs.status = "PENDING_REVIEW"
            session.commit()
        await sub.drain()
        assert [e.payload["id"] for e in received] == [mine.id]
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_queue_change_reports_core_updates(self, feed, session_factory):
        received = []
        sub = NotificationChannel(feed, EventKind.UPDATE, "screenings").subscribe(received.append)
        with session_factory() as session:
            s = _add_screening(session)
            session.execute(update(Screening).where(Screening.id == s.id).values(status="COMPLETED"))
            queue_change(session, "UPDATE", "screenings", {"id": s.id, "status": "COMPLETED"})
            session.commit()
        await sub.drain()
        assert [e.payload["status"] for e in received] == ["COMPLETED"]
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self, feed, session_factory):
        received = []
        sub = NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(
            lambda e: received.append(e.payload["child_name"])
        )
        with session_factory() as session:
            for name in ("a", "b", "c", "d"):
                _add_screening(session, name=name)
        await sub.drain()
        assert received == ["a", "b", "c", "d"]
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self, feed):
        received = []
        sub = NotificationChannel(feed, EventKind.INSERT, "clinical_reviews").subscribe(received.append)
        worker = threading.Thread(
            target=feed.publish, args=(ChangeEvent(EventKind.INSERT, "clinical_reviews", {"review_id": "r1"}),),
        )
        worker.start()
        worker.join()
        await sub.drain()
        assert [e.payload["review_id"] for e in received] == ["r1"]
        sub.unsubscribe()


class TestSubscription:
    @pytest.mark.asyncio
    async def test_callback_failure_keeps_subscription_alive(self, feed):
        received = []

        async def callback(change: ChangeEvent) -> None:
            if change.payload.get("boom"):
                raise RuntimeError("boom")
            received.append(change)

        sub = NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(callback)
        feed.publish(ChangeEvent(EventKind.INSERT, "screenings", {"boom": True}))
        feed.publish(ChangeEvent(EventKind.INSERT, "screenings", {"id": "ok"}))
        await sub.drain()
        assert [e.payload["id"] for e in received] == ["ok"]
        assert sub.active
        await sub.aclose()

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, feed):
        received = []
        sub = NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(received.append)
        assert feed.subscriber_count == 1
        sub.unsubscribe()
        sub.unsubscribe()
        assert feed.subscriber_count == 0
        assert not sub.active
        assert feed.publish(ChangeEvent(EventKind.INSERT, "screenings", {})) == 0
        assert received == []

    def test_channel_matching(self, feed):
        channel = NotificationChannel(feed, "UPDATE", "screenings", {"family_id": FAMILY})
        assert channel.matches(ChangeEvent(EventKind.UPDATE, "screenings", {"family_id": FAMILY}))
        assert not channel.matches(ChangeEvent(EventKind.UPDATE, "screenings", {"family_id": OTHER_FAMILY}))
        assert not channel.matches(ChangeEvent(EventKind.INSERT, "screenings", {"family_id": FAMILY}))
        assert not channel.matches(ChangeEvent(EventKind.UPDATE, "clinical_reviews", {"family_id": FAMILY}))

    def test_subscribe_requires_running_loop(self, feed):
        with pytest.raises(RuntimeError):
            NotificationChannel(feed, EventKind.INSERT, "screenings").subscribe(lambda e: None)
        assert feed.subscriber_count == 0
