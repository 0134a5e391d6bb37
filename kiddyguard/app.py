from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from kiddyguard import lifecycle, notifications, services, wallets
from kiddyguard.config import configure_logging
from kiddyguard.db import get_session, get_session_factory, init_db
from kiddyguard.errors import KiddyGuardError, OperationResult
from kiddyguard.notifier import ReviewNotifier, make_screening_fetcher
from kiddyguard.questions import (
    Question,
    clear_question_cache,
    get_question_bank,
    question_by_id,
    question_metadata,
    questions_by_domain,
)
from kiddyguard.realtime import default_feed
from kiddyguard.schemas import (
    NotificationOut,
    PaymentStatusUpdate,
    PendingReviewOut,
    ReloadResult,
    ReviewCreate,
    ReviewOut,
    RiskScoreUpdate,
    ScreeningCreate,
    ScreeningOut,
    ScreeningReport,
    TopUpRequest,
    UserNotification,
    WalletOut,
)
from kiddyguard.utils import validate_uuid

log = logging.getLogger(__name__)

# seconds between SSE keep-alive comments
EVENT_KEEPALIVE_SECONDS = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="KiddyGuard",
    version="0.1.0",
    description=(
        "Developmental screening API. Parents submit milestone questionnaires for "
        "their children; once the screening fee settles, a clinician reviews the "
        "screening exactly once and the family is notified in real time."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Questions", "description": "Age-filtered milestone questions."},
        {"name": "Screenings", "description": "Submit and read screenings."},
        {"name": "Reviews", "description": "Clinician review queue and review submission."},
        {"name": "Notifications", "description": "Per-user notifications and the live family event stream."},
        {"name": "Wallets", "description": "Demo wallet balances."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------

_STATUS_BY_KIND = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "precondition_failed": 412,
    "storage": 500,
}


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _http_error(error: str | None, kind: str | None) -> HTTPException:
    return HTTPException(_STATUS_BY_KIND.get(kind or "", 500), error or "Unknown error occurred")


def _unwrap(result: OperationResult) -> Any:
    if not result.success:
        raise _http_error(result.error, result.error_kind)
    return result.data


# ---------------------------------------------------------------------------
# Routes: Questions
# ---------------------------------------------------------------------------


@app.get("/api/questions", tags=["Questions"], summary="Questions for a child's age, grouped by domain")
async def list_questions(age: int = Query(..., description="Child age in months")):
    try:
        grouped = questions_by_domain(age)
    except KiddyGuardError as exc:
        raise _http_error(exc.message, exc.kind) from exc
    return {
        "age_months": age,
        "version": question_metadata().version,
        "total": sum(len(items) for items in grouped.values()),
        "domains": {domain.value: items for domain, items in grouped.items()},
    }


@app.get("/api/questions/{question_id}", response_model=Question, response_model_by_alias=True,
         tags=["Questions"], summary="Get a single question")
async def get_question(question_id: str):
    question = question_by_id(question_id)
    if question is None:
        raise HTTPException(404, f"Question {question_id} not found")
    return question


# ---------------------------------------------------------------------------
# Routes: Screenings
# ---------------------------------------------------------------------------


@app.post("/api/screenings", response_model=ScreeningOut, status_code=201,
          tags=["Screenings"], summary="Submit a milestone screening")
def create_screening(body: ScreeningCreate, session: Session = Depends(db_session)):
    return _unwrap(services.submit_screening(
        session, body.family_id, body.child_name, body.child_age_months, body.answers,
        risk_score=body.risk_score, videos=body.videos,
    ))


@app.get("/api/families/{family_id}/screenings", response_model=list[ScreeningOut],
         tags=["Screenings"], summary="A family's screenings, newest first")
def family_screenings(family_id: str, session: Session = Depends(db_session)):
    return _unwrap(services.get_family_screenings(session, family_id))


@app.get("/api/screenings/{screening_id}", response_model=ScreeningReport,
         tags=["Screenings"], summary="Screening with its clinical review, if any")
def get_screening(screening_id: str, session: Session = Depends(db_session)):
    return _unwrap(services.get_screening_report(session, screening_id))


@app.post("/api/screenings/{screening_id}/risk-score", response_model=ScreeningOut,
          tags=["Screenings"], summary="Store the external risk score")
def set_risk_score(screening_id: str, body: RiskScoreUpdate, session: Session = Depends(db_session)):
    return _unwrap(services.record_risk_score(session, screening_id, body.risk_score))


@app.post("/api/screenings/{screening_id}/payment", response_model=ScreeningOut,
          tags=["Screenings"], summary="Record a payment status from the settlement processor")
def record_payment(screening_id: str, body: PaymentStatusUpdate, session: Session = Depends(db_session)):
    return _unwrap(lifecycle.record_payment_status(
        session, screening_id, body.status, amount=body.amount, currency=body.currency,
    ))


# ---------------------------------------------------------------------------
# Routes: Reviews
# ---------------------------------------------------------------------------


@app.get("/api/reviews/pending", response_model=list[PendingReviewOut],
         tags=["Reviews"], summary="Paid screenings awaiting clinical review")
def pending_reviews(session: Session = Depends(db_session)):
    return _unwrap(lifecycle.list_pending_reviews(session))


@app.post("/api/screenings/{screening_id}/open", response_model=ScreeningOut,
          tags=["Reviews"], summary="Mark a screening as under review")
def open_screening(screening_id: str, session: Session = Depends(db_session)):
    return _unwrap(lifecycle.open_review(session, screening_id))


@app.post("/api/screenings/{screening_id}/review", response_model=ReviewOut, status_code=201,
          tags=["Reviews"], summary="Submit the clinical review (once per screening)")
def submit_review(screening_id: str, body: ReviewCreate, session: Session = Depends(db_session)):
    return _unwrap(lifecycle.create_review(
        session, screening_id, notes=body.notes, risk_level=body.risk_level, reviewer_id=body.reviewer_id,
    ))


# ---------------------------------------------------------------------------
# Routes: Notifications
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/notifications", response_model=list[NotificationOut],
         tags=["Notifications"], summary="A user's most recent notifications")
def user_notifications(user_id: str, session: Session = Depends(db_session)):
    return _unwrap(notifications.get_notifications(session, user_id))


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut,
          tags=["Notifications"], summary="Mark a notification as read")
def read_notification(notification_id: str, session: Session = Depends(db_session)):
    return _unwrap(notifications.mark_notification_read(session, notification_id))


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@app.get("/api/families/{family_id}/events", tags=["Notifications"],
         summary="Live review notifications for a family (SSE stream)")
async def family_events(family_id: str, request: Request):
    try:
        family_id = validate_uuid(family_id, "family ID")
    except KiddyGuardError as exc:
        raise _http_error(exc.message, exc.kind) from exc

    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def on_notification(notification: UserNotification) -> None:
        queue.put_nowait({"type": "notification", **notification.model_dump()})

    def on_refresh() -> None:
        queue.put_nowait({"type": "refresh"})

    notifier = ReviewNotifier(
        default_feed, family_id, make_screening_fetcher(get_session_factory()),
        on_notification, on_refresh,
    )

    async def stream():
        async with notifier:
            yield _sse({"type": "subscribed", "family_id": family_id})
            while not await request.is_disconnected():
                try:
                    item = await asyncio.wait_for(queue.get(), EVENT_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(item)
        log.debug("Event stream for family %s closed", family_id)

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Wallets
# ---------------------------------------------------------------------------


@app.post("/api/wallets/top-up", response_model=WalletOut, tags=["Wallets"], summary="Top up a demo wallet")
def top_up(body: TopUpRequest, session: Session = Depends(db_session)):
    return _unwrap(wallets.top_up_wallet(session, body.user_id, body.amount, body.asset))


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/questions/reload", response_model=ReloadResult,
          tags=["Admin"], summary="Drop the cached question dataset and reload it")
async def reload_questions():
    clear_question_cache()
    metadata = question_metadata()
    return ReloadResult(version=metadata.version, total_questions=len(get_question_bank().all()))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    uvicorn.run("kiddyguard.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
