"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database shared through StaticPool.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kiddyguard.models import Base, Profile

FAMILY = "11111111-2222-3333-4444-555555555555"


@pytest.fixture()
def test_db():
    """In-memory SQLite shared by every connection via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    engine, TestSession = test_db
    from kiddyguard.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("kiddyguard.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c, TestSession
    app.dependency_overrides.clear()


def _submit(c, **overrides) -> dict:
    body = {
        "family_id": FAMILY, "child_name": "Ayu", "child_age_months": 24,
        "answers": {"LANG-006": "Yes", "LANG-007": "Not Yet", "GM-006": True},
        "risk_score": 64,
    }
    body.update(overrides)
    resp = c.post("/api/screenings", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _settle(c, screening_id: str) -> None:
    resp = c.post(f"/api/screenings/{screening_id}/payment", json={"status": "SETTLED", "amount": 150000})
    assert resp.status_code == 200, resp.text


class TestQuestionRoutes:
    def test_questions_for_age(self, client):
        c, _ = client
        resp = c.get("/api/questions", params={"age": 24})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 10
        assert set(data["domains"]) == {"personal_social", "fine_motor", "language", "gross_motor"}
        assert [q["id"] for q in data["domains"]["language"]] == ["LANG-006", "LANG-007"]

    def test_negative_age(self, client):
        c, _ = client
        assert c.get("/api/questions", params={"age": -3}).status_code == 400

    def test_get_question(self, client):
        c, _ = client
        resp = c.get("/api/questions/GM-007")
        assert resp.status_code == 200
        assert resp.json()["requiresVideo"] is True
        assert c.get("/api/questions/NOPE").status_code == 404

    def test_reload(self, client):
        c, _ = client
        resp = c.post("/api/admin/questions/reload")
        assert resp.status_code == 200
        assert resp.json() == {"version": "2.1.0", "total_questions": 32}


class TestScreeningFlow:
    def test_submit_and_list(self, client):
        c, _ = client
        created = _submit(c)
        assert created["status"] == "PENDING_PAYMENT"
        assert created["risk_level"] == "High"

        resp = c.get(f"/api/families/{FAMILY}/screenings")
        assert resp.status_code == 200
        assert [s["id"] for s in resp.json()] == [created["id"]]

    def test_invalid_submission(self, client):
        c, _ = client
        resp = c.post("/api/screenings", json={
            "family_id": FAMILY, "child_name": "Ayu", "child_age_months": 24, "answers": {"XX-1": True},
        })
        assert resp.status_code == 400

    def test_review_lifecycle(self, client):
        c, TestSession = client
        with TestSession() as session:
            session.add(Profile(family_id=FAMILY, role="parent", display_name="Sari"))
            session.commit()
            parent_id = session.query(Profile).one().id

        created = _submit(c)
        sid = created["id"]
        assert c.get("/api/reviews/pending").json() == []
        assert c.post(f"/api/screenings/{sid}/review", json={}).status_code == 412

        _settle(c, sid)
        pending = c.get("/api/reviews/pending").json()
        assert [p["screening_id"] for p in pending] == [sid]
        assert pending[0]["payment_status"] == "SETTLED"

        assert c.post(f"/api/screenings/{sid}/open").json()["status"] == "UNDER_REVIEW"

        resp = c.post(f"/api/screenings/{sid}/review", json={
            "notes": "Follow up on expressive language.", "risk_level": "MODERATE", "reviewer_id": "Dr. Lee",
        })
        assert resp.status_code == 201, resp.text
        assert resp.json()["clinical_risk_level"] == "MODERATE"

        again = c.post(f"/api/screenings/{sid}/review", json={"notes": "dup"})
        assert again.status_code == 409
        assert c.get("/api/reviews/pending").json() == []

        report = c.get(f"/api/screenings/{sid}").json()
        assert report["screening"]["status"] == "COMPLETED"
        assert report["review"]["reviewed_by"] == "Dr. Lee"

        notes = c.get(f"/api/users/{parent_id}/notifications").json()
        assert [n["title"] for n in notes] == ["Results Ready"]
        read = c.post(f"/api/notifications/{notes[0]['id']}/read")
        assert read.json()["is_read"] is True

    def test_unknown_screening(self, client):
        c, _ = client
        assert c.get("/api/screenings/00000000-0000-0000-0000-000000000000").status_code == 404
        assert c.get("/api/screenings/bogus").status_code == 400

    def test_risk_score_update(self, client):
        c, _ = client
        sid = _submit(c, risk_score=None)["id"]
        resp = c.post(f"/api/screenings/{sid}/risk-score", json={"risk_score": 12})
        assert resp.status_code == 200
        assert resp.json()["risk_level"] == "Low"


class TestMiscRoutes:
    def test_notifications_bad_id(self, client):
        c, _ = client
        assert c.get("/api/users/not-a-uuid/notifications").status_code == 400
        assert c.post("/api/notifications/not-a-uuid/read").status_code == 400

    def test_wallet_top_up(self, client):
        c, _ = client
        resp = c.post("/api/wallets/top-up", json={"user_id": "user-1", "amount": 5, "asset": "SOL"})
        assert resp.status_code == 200
        assert resp.json()["sol_balance"] == 5.0
        resp = c.post("/api/wallets/top-up", json={"user_id": "user-1", "amount": 5, "asset": "DOGE"})
        assert resp.status_code == 400

    def test_events_rejects_bad_family(self, client):
        c, _ = client
        assert c.get("/api/families/nope/events").status_code == 400
