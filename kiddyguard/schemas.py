"""Pydantic request/response schemas for the KiddyGuard API."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kiddyguard.utils import validate_uuid


class _DomainScoresMixin(BaseModel):
    personal_social_score: int | None = None
    fine_motor_score: int | None = None
    language_score: int | None = None
    gross_motor_score: int | None = None


class ScreeningOut(_DomainScoresMixin):
    id: str
    family_id: str
    child_name: str
    child_age_months: int
    risk_score: float | None = None
    risk_level: str
    summary: str = ""
    status: str
    created_at: datetime


class PendingReviewOut(_DomainScoresMixin):
    screening_id: str
    child_name: str
    child_age_months: int
    risk_level: str
    risk_score: float | None = None
    summary: str | None = None
    status: str
    created_at: datetime
    payment_status: str
    payment_amount: float | None = None
    has_video: bool = False


class ReviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: str
    screening_id: str
    clinical_notes: str | None = None
    clinical_risk_level: str | None = None
    reviewed_by: str
    reviewed_at: datetime


class ScreeningReport(BaseModel):
    screening: ScreeningOut
    review: ReviewOut | None = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    screening_id: str | None = None
    title: str
    message: str
    is_read: bool
    created_at: datetime


class UserNotification(BaseModel):
    """In-app alert emitted by the review notifier (toast equivalent)."""
    title: str
    description: str
    screening_id: str
    review_id: str
    link: str


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    usdc_balance: float
    sol_balance: float
    zenzec_balance: float


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ScreeningCreate(BaseModel):
    family_id: str
    child_name: str
    child_age_months: int = Field(ge=0)
    answers: dict[str, bool | str]
    videos: dict[str, str] = Field(default_factory=dict)
    risk_score: float | None = None

    @field_validator("family_id")
    @classmethod
    def family_id_must_be_uuid(cls, v: str) -> str:
        return validate_uuid(v, "family ID")


class PaymentStatusUpdate(BaseModel):
    status: str
    amount: float | None = None
    currency: str = "IDR"


class ReviewCreate(BaseModel):
    notes: str | None = None
    risk_level: str | None = None
    reviewer_id: str | None = None


class RiskScoreUpdate(BaseModel):
    risk_score: float = Field(ge=0)


class TopUpRequest(BaseModel):
    user_id: str
    amount: float
    asset: str


class ReloadResult(BaseModel):
    version: str
    total_questions: int
