"""Shared business logic for the KiddyGuard API and MCP server."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from kiddyguard.errors import NotFoundError, PreconditionFailed, ValidationError, operation
from kiddyguard.models import ClinicalReview, Screening, ScreeningStatus
from kiddyguard.questions import (
    DOMAIN_LABELS,
    Domain,
    RiskLevel,
    calculate_domain_scores,
    classify_risk,
    question_by_id,
)
from kiddyguard.schemas import ReviewOut, ScreeningOut, ScreeningReport
from kiddyguard.utils import json_parse, validate_uuid

log = logging.getLogger(__name__)

MAX_SCREENING_AGE_MONTHS = 72

# External scoring function: (answer records, child age in months) -> overall risk score
RiskScorer = Callable[[list[dict[str, Any]], int], float]

DOMAIN_SCORE_FIELDS = {
    Domain.PERSONAL_SOCIAL: "personal_social_score",
    Domain.FINE_MOTOR: "fine_motor_score",
    Domain.LANGUAGE: "language_score",
    Domain.GROSS_MOTOR: "gross_motor_score",
}

_MISSED_RESPONSES = ("no", "not yet", "false")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def screening_answers(screening: Screening) -> list[dict[str, Any]]:
    answers = json_parse(screening.answers_json, [])
    return answers if isinstance(answers, list) else []


def has_video(answers: list[dict[str, Any]]) -> bool:
    return any(a.get("video_url") or a.get("videoUrl") for a in answers if isinstance(a, dict))


def domain_scores(screening: Screening) -> dict[str, int | None]:
    return {f: getattr(screening, f) for f in DOMAIN_SCORE_FIELDS.values()}


def screening_out(screening: Screening) -> ScreeningOut:
    return ScreeningOut(
        id=screening.id, family_id=screening.family_id,
        child_name=screening.child_name, child_age_months=screening.child_age_months,
        risk_score=screening.risk_score,
        risk_level=classify_risk(screening.risk_score).value,
        summary=screening.summary or "", status=screening.status,
        created_at=screening.created_at,
        **domain_scores(screening),
    )


def review_out(review: ClinicalReview) -> ReviewOut:
    return ReviewOut.model_validate(review)


def require_screening(session: Session, screening_id: str) -> Screening:
    screening = session.get(Screening, screening_id)
    if screening is None:
        raise NotFoundError(f"Screening {screening_id} not found")
    return screening


# ---------------------------------------------------------------------------
# Answer processing
# ---------------------------------------------------------------------------


def _missed(response: Any) -> bool:
    if isinstance(response, bool):
        return not response
    return isinstance(response, str) and response.strip().lower() in _MISSED_RESPONSES


def build_answer_records(
    answers: dict[str, bool | str], videos: dict[str, str] | None = None,
) -> list[dict[str, Any]]:
    """Attach question metadata to raw answers; unknown question ids are skipped."""
    videos = videos or {}
    records: list[dict[str, Any]] = []
    for question_id, response in answers.items():
        question = question_by_id(question_id)
        if question is None:
            log.warning("Question not found: %s", question_id)
            continue
        if isinstance(response, str):
            options = {o.lower(): o for o in question.response_options}
            if response.strip().lower() not in options:
                raise ValidationError(f"Invalid response {response!r} for question {question_id}")
            response = options[response.strip().lower()]
        record = {
            "question_id": question.id,
            "domain": question.domain.value,
            "question_text": question.question_text,
            "milestone_age_months": question.age_range_months.start,
            "response": response,
        }
        if videos.get(question_id):
            record["video_url"] = videos[question_id]
        records.append(record)
    return records


def build_summary(risk_score: float | None, records: list[dict[str, Any]]) -> str:
    if risk_score is None:
        return "Awaiting risk assessment."
    if classify_risk(risk_score) is RiskLevel.HIGH:
        affected = [
            DOMAIN_LABELS[d] for d in Domain
            if any(r["domain"] == d.value and _missed(r["response"]) for r in records)
        ]
        if affected:
            return f"Concerns detected in {', '.join(affected)}. Clinical review recommended."
        return "Concerns detected. Clinical review recommended."
    return "Developmental milestones appear on track."


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@operation
def submit_screening(
    session: Session,
    family_id: str,
    child_name: str,
    child_age_months: int,
    answers: dict[str, bool | str],
    *,
    scorer: RiskScorer | None = None,
    risk_score: float | None = None,
    videos: dict[str, str] | None = None,
) -> ScreeningOut:
    """Persist a new screening in ``PENDING_PAYMENT``.

    The overall risk score comes from *scorer* (or a precomputed *risk_score*);
    without either it stays null until :func:`record_risk_score` is called.
    """
    family_id = validate_uuid(family_id, "family ID")
    child_name = (child_name or "").strip()
    if not child_name:
        raise ValidationError("Child name is required")
    if isinstance(child_age_months, bool) or not isinstance(child_age_months, int) \
            or not 0 <= child_age_months <= MAX_SCREENING_AGE_MONTHS:
        raise ValidationError(f"Age must be between 0 and {MAX_SCREENING_AGE_MONTHS} months")
    if not answers:
        raise ValidationError("Answers cannot be empty")

    records = build_answer_records(answers, videos)
    if not records:
        raise ValidationError("No valid answers found")

    if scorer is not None:
        risk_score = float(scorer(records, child_age_months))

    screening = Screening(
        family_id=family_id, child_name=child_name, child_age_months=child_age_months,
        answers_json=json.dumps(records), risk_score=risk_score,
        summary=build_summary(risk_score, records),
        status=ScreeningStatus.PENDING_PAYMENT.value,
    )
    for domain, score in calculate_domain_scores(records, child_age_months).items():
        setattr(screening, DOMAIN_SCORE_FIELDS[domain], score)
    session.add(screening)
    session.commit()
    log.info("Screening %s submitted for family %s (risk=%s)", screening.id, family_id, risk_score)
    return screening_out(screening)


@operation
def record_risk_score(session: Session, screening_id: str, risk_score: float) -> ScreeningOut:
    """Store the external scorer's result for a screening that has none yet."""
    screening_id = validate_uuid(screening_id, "screening ID")
    screening = require_screening(session, screening_id)
    if screening.status == ScreeningStatus.COMPLETED.value:
        raise PreconditionFailed("Screening review is already completed")
    screening.risk_score = float(risk_score)
    screening.summary = build_summary(screening.risk_score, screening_answers(screening))
    session.commit()
    return screening_out(screening)


@operation
def get_family_screenings(session: Session, family_id: str) -> list[ScreeningOut]:
    family_id = validate_uuid(family_id, "family ID")
    rows = session.execute(
        select(Screening).where(Screening.family_id == family_id).order_by(Screening.created_at.desc())
    ).scalars().all()
    return [screening_out(s) for s in rows]


@operation
def get_screening_report(session: Session, screening_id: str) -> ScreeningReport:
    screening_id = validate_uuid(screening_id, "screening ID")
    screening = require_screening(session, screening_id)
    review = session.execute(
        select(ClinicalReview).where(ClinicalReview.screening_id == screening_id)
    ).scalars().first()
    return ScreeningReport(
        screening=screening_out(screening),
        review=review_out(review) if review else None,
    )
