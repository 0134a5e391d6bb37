"""Question domain engine: age-gated Denver II question bank.

Architecture
------------
The bank is loaded from a versioned JSON dataset exactly once per process and
kept in a lazily-initialised :class:`QuestionBank` singleton. Readers take the
current snapshot reference without locking; :func:`clear_question_cache` drops
the reference so the next access reloads from disk. There is no automatic
expiry.

Questions belong to one of four fixed domains:

- **personal_social**: social smile, play, self care
- **fine_motor**: grasping, drawing, object manipulation
- **language**: vocalising, words, following commands
- **gross_motor**: head control, sitting, walking, running

The overall risk score is produced by an external scorer; this module only
classifies it against :data:`RISK_THRESHOLD` and derives per-domain pass rates.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from kiddyguard.config import get_settings
from kiddyguard.errors import ValidationError

log = logging.getLogger(__name__)

RISK_THRESHOLD = 50


class Domain(str, Enum):
    PERSONAL_SOCIAL = "personal_social"
    FINE_MOTOR = "fine_motor"
    LANGUAGE = "language"
    GROSS_MOTOR = "gross_motor"


DOMAIN_LABELS = {
    Domain.PERSONAL_SOCIAL: "Personal-Social",
    Domain.FINE_MOTOR: "Fine Motor",
    Domain.LANGUAGE: "Language",
    Domain.GROSS_MOTOR: "Gross Motor",
}


class RiskLevel(str, Enum):
    HIGH = "High"
    LOW = "Low"


# ---------------------------------------------------------------------------
# Dataset records
# ---------------------------------------------------------------------------


class AgeRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    def contains(self, age_months: int) -> bool:
        return self.start <= age_months <= self.end


class Question(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    domain: Domain
    question_text: str = Field(alias="questionText")
    age_range_months: AgeRange = Field(alias="ageRangeMonths")
    response_options: tuple[str, ...] = Field(default=("Yes", "Not Yet", "No Opportunity"), alias="responseOptions")
    requires_video: bool = Field(default=False, alias="requiresVideo")
    video_instruction: str = Field(default="", alias="videoInstruction")
    order: int


class BankMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: str = ""
    total_questions: int = Field(default=0, alias="totalQuestions")
    age_range_months: dict[str, int] = Field(default_factory=dict, alias="ageRangeMonths")
    last_updated: str = Field(default="", alias="lastUpdated")
    description: str = ""


@dataclass(frozen=True)
class _Snapshot:
    metadata: BankMetadata
    questions: tuple[Question, ...]
    by_id: dict[str, Question]


# ---------------------------------------------------------------------------
# Bank
# ---------------------------------------------------------------------------


class QuestionBank:
    """Read-through cache over one question dataset file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._snapshot: _Snapshot | None = None

    def _load(self) -> _Snapshot:
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        questions = tuple(Question.model_validate(q) for q in raw.get("questions", []))
        metadata = BankMetadata.model_validate(raw.get("metadata", {}))
        log.info("Loaded %d questions from %s (version %s)", len(questions), self.path.name, metadata.version or "?")
        return _Snapshot(metadata=metadata, questions=questions, by_id={q.id: q for q in questions})

    def snapshot(self) -> _Snapshot:
        snap = self._snapshot
        if snap is None:
            with self._lock:
                if self._snapshot is None:
                    self._snapshot = self._load()
                snap = self._snapshot
        return snap

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def all(self) -> tuple[Question, ...]:
        return self.snapshot().questions

    def metadata(self) -> BankMetadata:
        return self.snapshot().metadata

    def for_age(self, age_months: int) -> list[Question]:
        age_months = _check_age(age_months)
        return [q for q in self.all() if q.age_range_months.contains(age_months)]

    def by_domain(self, age_months: int) -> dict[Domain, list[Question]]:
        grouped: dict[Domain, list[Question]] = {d: [] for d in Domain}
        for q in self.for_age(age_months):
            grouped[q.domain].append(q)
        for items in grouped.values():
            items.sort(key=lambda q: q.order)
        return grouped

    def by_id(self, question_id: str) -> Question | None:
        return self.snapshot().by_id.get(question_id)


def _check_age(age_months: Any) -> int:
    if isinstance(age_months, bool) or not isinstance(age_months, int) or age_months < 0:
        raise ValidationError("Age in months must be a non-negative integer")
    return age_months


_bank_lock = threading.Lock()
_bank: QuestionBank | None = None


def get_question_bank() -> QuestionBank:
    """Return the process-wide bank, creating it from settings on first use."""
    global _bank
    bank = _bank
    if bank is None:
        with _bank_lock:
            if _bank is None:
                _bank = QuestionBank(get_settings().question_bank_path)
            bank = _bank
    return bank


def clear_question_cache() -> None:
    """Drop the loaded dataset; the next query reloads it from disk."""
    get_question_bank().invalidate()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def questions_for_age(age_months: int) -> list[Question]:
    return get_question_bank().for_age(age_months)


def questions_by_domain(age_months: int) -> dict[Domain, list[Question]]:
    """All four domains mapped to their age-filtered questions, sorted by ``order``."""
    return get_question_bank().by_domain(age_months)


def questions_by_domain_and_age(domain: Domain | str, age_months: int) -> list[Question]:
    try:
        domain = Domain(domain)
    except ValueError as exc:
        raise ValidationError(f"Unknown domain: {domain!r}") from exc
    return questions_by_domain(age_months)[domain]


def question_by_id(question_id: str) -> Question | None:
    return get_question_bank().by_id(question_id)


def question_metadata() -> BankMetadata:
    return get_question_bank().metadata()


# ---------------------------------------------------------------------------
# Classification and domain scores
# ---------------------------------------------------------------------------


def classify_risk(score: float | None) -> RiskLevel:
    """``High`` when score >= RISK_THRESHOLD, else ``Low``. Missing scores are ``Low``."""
    if score is not None and score >= RISK_THRESHOLD:
        return RiskLevel.HIGH
    return RiskLevel.LOW


def answer_passed(response: Any) -> bool:
    if isinstance(response, bool):
        return response
    if isinstance(response, str):
        return response.strip().lower() in ("yes", "true")
    return False


def calculate_domain_scores(answers: list[dict[str, Any]], child_age_months: int) -> dict[Domain, int]:
    """Percentage (0-100) of age-appropriate milestones passed in each domain.

    An answer counts toward its domain when its ``milestone_age_months`` is at
    most the child's age. Domains without any counted answer score 0.
    """
    passed = {d: 0 for d in Domain}
    total = {d: 0 for d in Domain}
    for answer in answers:
        try:
            domain = Domain(answer.get("domain") or answer.get("category") or "")
        except ValueError:
            continue
        if (answer.get("milestone_age_months") or 0) > child_age_months:
            continue
        total[domain] += 1
        if answer_passed(answer.get("response")):
            passed[domain] += 1
    return {d: round(passed[d] / total[d] * 100) if total[d] else 0 for d in Domain}
