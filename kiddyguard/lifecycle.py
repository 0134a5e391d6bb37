"""Screening lifecycle: payment gate, review eligibility and single-review creation.

States::

    PENDING_PAYMENT --(payment SETTLED)--> PENDING_REVIEW --(opened)--> UNDER_REVIEW
                                                 \\                         |
                                                  +------(review)-------> COMPLETED

A screening is *pending review* iff one of its payment intents is ``SETTLED``
and no clinical review references it. ``create_review`` relies on the UNIQUE
constraint on ``clinical_reviews.screening_id`` plus a conditional status
update in the same transaction, so concurrent reviewers of one screening see
exactly one success; every other caller gets ``ConcurrencyConflict``.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from kiddyguard.config import get_settings
from kiddyguard.errors import ConcurrencyConflict, PreconditionFailed, ValidationError, operation
from kiddyguard.models import (
    ClinicalReview,
    ClinicalRiskLevel,
    PaymentIntent,
    PaymentStatus,
    Profile,
    Screening,
    ScreeningStatus,
)
from kiddyguard.notifications import create_notification
from kiddyguard.questions import classify_risk
from kiddyguard.realtime import EventKind, queue_change, snapshot
from kiddyguard.schemas import PendingReviewOut, ReviewOut, ScreeningOut
from kiddyguard.services import (
    domain_scores,
    has_video,
    require_screening,
    review_out,
    screening_answers,
    screening_out,
)
from kiddyguard.utils import validate_uuid

log = logging.getLogger(__name__)

TRANSITIONS: dict[ScreeningStatus, frozenset[ScreeningStatus]] = {
    ScreeningStatus.PENDING_PAYMENT: frozenset({ScreeningStatus.PENDING_REVIEW}),
    ScreeningStatus.PENDING_REVIEW: frozenset({ScreeningStatus.UNDER_REVIEW, ScreeningStatus.COMPLETED}),
    ScreeningStatus.UNDER_REVIEW: frozenset({ScreeningStatus.COMPLETED}),
    ScreeningStatus.COMPLETED: frozenset(),
}


def can_transition(current: ScreeningStatus | str, target: ScreeningStatus | str) -> bool:
    return ScreeningStatus(target) in TRANSITIONS[ScreeningStatus(current)]


def _settled_clause():
    return exists().where(
        PaymentIntent.screening_id == Screening.id,
        PaymentIntent.status == PaymentStatus.SETTLED.value,
    )


def _reviewed_clause():
    return exists().where(ClinicalReview.screening_id == Screening.id)


def is_settled(session: Session, screening_id: str) -> bool:
    return session.execute(
        select(PaymentIntent.intent_id).where(
            PaymentIntent.screening_id == screening_id,
            PaymentIntent.status == PaymentStatus.SETTLED.value,
        ).limit(1)
    ).first() is not None


def has_review(session: Session, screening_id: str) -> bool:
    return session.execute(
        select(ClinicalReview.review_id).where(ClinicalReview.screening_id == screening_id)
    ).first() is not None


def _parse_risk_level(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    try:
        return ClinicalRiskLevel(value.strip().upper()).value
    except ValueError as exc:
        raise ValidationError("Invalid risk level. Must be LOW, MODERATE, or HIGH") from exc


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@operation
def list_pending_reviews(session: Session) -> list[PendingReviewOut]:
    """Settled, unreviewed screenings, newest first."""
    screenings = session.execute(
        select(Screening)
        .where(_settled_clause(), ~_reviewed_clause())
        .order_by(Screening.created_at.desc())
    ).scalars().all()
    if not screenings:
        return []

    payments: dict[str, PaymentIntent] = {}
    for intent in session.execute(
        select(PaymentIntent).where(
            PaymentIntent.screening_id.in_([s.id for s in screenings]),
            PaymentIntent.status == PaymentStatus.SETTLED.value,
        ).order_by(PaymentIntent.created_at)
    ).scalars():
        payments[intent.screening_id] = intent

    rows = []
    for s in screenings:
        intent = payments.get(s.id)
        rows.append(PendingReviewOut(
            screening_id=s.id, child_name=s.child_name, child_age_months=s.child_age_months,
            risk_level=classify_risk(s.risk_score).value, risk_score=s.risk_score,
            summary=s.summary or None, status=s.status or ScreeningStatus.PENDING_REVIEW.value,
            created_at=s.created_at,
            payment_status=intent.status if intent else "UNKNOWN",
            payment_amount=intent.amount if intent else None,
            has_video=has_video(screening_answers(s)),
            **domain_scores(s),
        ))
    return rows


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _advance(session: Session, screening: Screening, target: ScreeningStatus) -> None:
    current = ScreeningStatus(screening.status)
    if current is target:
        return
    if not can_transition(current, target):
        raise PreconditionFailed(f"Cannot move screening from {current.value} to {target.value}")
    screening.status = target.value


@operation
def record_payment_status(
    session: Session, screening_id: str, status: str,
    amount: float | None = None, currency: str = "IDR",
) -> ScreeningOut:
    """Inbound hook for the external settlement processor.

    Stores the observed payment status for the screening and, on ``SETTLED``,
    moves a ``PENDING_PAYMENT`` screening to ``PENDING_REVIEW``.
    """
    screening_id = validate_uuid(screening_id, "screening ID")
    try:
        status = PaymentStatus(status.strip().upper()).value
    except (ValueError, AttributeError) as exc:
        raise ValidationError(f"Invalid payment status: {status!r}") from exc
    screening = require_screening(session, screening_id)

    intent = session.execute(
        select(PaymentIntent).where(PaymentIntent.screening_id == screening_id)
        .order_by(PaymentIntent.created_at.desc())
    ).scalars().first()
    if intent is None:
        intent = PaymentIntent(screening_id=screening_id, family_id=screening.family_id,
                               amount=amount or 0.0, currency=currency, status=status)
        session.add(intent)
    elif intent.status != PaymentStatus.SETTLED.value:
        intent.status = status
        if amount is not None:
            intent.amount = amount

    if status == PaymentStatus.SETTLED.value and screening.status == ScreeningStatus.PENDING_PAYMENT.value:
        _advance(session, screening, ScreeningStatus.PENDING_REVIEW)
    session.commit()
    log.info("Payment for screening %s is %s", screening_id, status)
    return screening_out(screening)


@operation
def open_review(session: Session, screening_id: str) -> ScreeningOut:
    """Advisory ``PENDING_REVIEW -> UNDER_REVIEW`` when a clinician opens the case."""
    screening_id = validate_uuid(screening_id, "screening ID")
    screening = require_screening(session, screening_id)
    if not is_settled(session, screening_id):
        raise PreconditionFailed("Payment for this screening has not settled")
    if screening.status == ScreeningStatus.PENDING_PAYMENT.value:
        _advance(session, screening, ScreeningStatus.PENDING_REVIEW)
    _advance(session, screening, ScreeningStatus.UNDER_REVIEW)
    session.commit()
    return screening_out(screening)


@operation
def create_review(
    session: Session,
    screening_id: str,
    notes: str | None = None,
    risk_level: str | None = None,
    reviewer_id: str | None = None,
) -> ReviewOut:
    """Attach the single clinical review to a settled screening and complete it."""
    screening_id = validate_uuid(screening_id, "screening ID")
    clinical_risk_level = _parse_risk_level(risk_level)
    notes = notes.strip() if notes else None
    reviewer = (reviewer_id or "").strip() or get_settings().default_reviewer_name

    screening = require_screening(session, screening_id)
    if not is_settled(session, screening_id):
        raise PreconditionFailed("Payment for this screening has not settled")
    if has_review(session, screening_id):
        raise ConcurrencyConflict(f"Screening {screening_id} already has a clinical review")

    review = ClinicalReview(
        screening_id=screening_id, clinical_notes=notes,
        clinical_risk_level=clinical_risk_level, reviewed_by=reviewer,
        reviewed_at=datetime.now(UTC),
    )
    try:
        session.add(review)
        session.flush()
        result = session.execute(
            update(Screening)
            .where(Screening.id == screening_id, Screening.status != ScreeningStatus.COMPLETED.value)
            .values(status=ScreeningStatus.COMPLETED.value)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Screening {screening_id} was completed concurrently")
        session.refresh(screening)
        queue_change(session, EventKind.UPDATE, Screening.__tablename__, snapshot(screening))
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConcurrencyConflict(f"Screening {screening_id} already has a clinical review") from exc
    except ConcurrencyConflict:
        session.rollback()
        raise

    log.info("Review %s completed screening %s (by %s)", review.review_id, screening_id, reviewer)
    _notify_parent(session, screening, reviewer)
    return review_out(review)


def _notify_parent(session: Session, screening: Screening, reviewer: str) -> None:
    """Write the "Results Ready" notification; failures are logged, never raised."""
    try:
        parent = session.execute(
            select(Profile).where(Profile.family_id == screening.family_id, Profile.role == "parent").limit(1)
        ).scalars().first()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Parent lookup failed for screening %s: %s", screening.id, exc)
        return
    if parent is None:
        log.warning("Parent user not found for family_id: %s", screening.family_id)
        return
    result = create_notification(
        session, parent.id, "Results Ready",
        f"{reviewer} has completed the review. Click to view the official report.",
        screening_id=screening.id,
    )
    if not result.success:
        log.error("Failed to create notification for screening %s: %s", screening.id, result.error)
