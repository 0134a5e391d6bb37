from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class ScreeningStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_REVIEW = "PENDING_REVIEW"
    SETTLED = "PENDING_REVIEW"  # alias used by the payment side
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    FUNDING_DETECTED = "FUNDING_DETECTED"
    ROUTING = "ROUTING"
    SHIELDING = "SHIELDING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


class ClinicalRiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


class Screening(Base):
    __tablename__ = "screenings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    family_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    child_name: Mapped[str] = mapped_column(String(200), nullable=False)
    child_age_months: Mapped[int] = mapped_column(Integer, nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, default="[]")
    personal_social_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fine_motor_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    language_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_motor_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default=ScreeningStatus.PENDING_PAYMENT.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    payment_intents: Mapped[list[PaymentIntent]] = relationship("PaymentIntent", back_populates="screening")
    review: Mapped[ClinicalReview | None] = relationship("ClinicalReview", back_populates="screening", uselist=False)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    intent_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    screening_id: Mapped[str] = mapped_column(String(36), ForeignKey("screenings.id"), nullable=False, index=True)
    family_id: Mapped[str] = mapped_column(String(36), default="")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(10), default="IDR")
    status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.CREATED.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    screening: Mapped[Screening] = relationship("Screening", back_populates="payment_intents")


class ClinicalReview(Base):
    __tablename__ = "clinical_reviews"

    review_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    # unique: the storage-level guard that allows only one review per screening
    screening_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("screenings.id"), nullable=False, unique=True,
    )
    clinical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    clinical_risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reviewed_by: Mapped[str] = mapped_column(String(200), default="")
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    screening: Mapped[Screening] = relationship("Screening", back_populates="review")


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    family_id: Mapped[str] = mapped_column(String(36), default="", index=True)
    role: Mapped[str] = mapped_column(String(20), default="parent")  # parent | child | clinic
    display_name: Mapped[str] = mapped_column(String(200), default="")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    screening_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("screenings.id"), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)


class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    usdc_balance: Mapped[float] = mapped_column(Float, default=0.0)
    sol_balance: Mapped[float] = mapped_column(Float, default=0.0)
    zenzec_balance: Mapped[float] = mapped_column(Float, default=0.0)
