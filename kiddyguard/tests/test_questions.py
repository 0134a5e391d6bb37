"""Tests for the question bank, risk classification and domain scores."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from kiddyguard import questions
from kiddyguard.errors import ValidationError
from kiddyguard.questions import (
    Domain,
    QuestionBank,
    RiskLevel,
    calculate_domain_scores,
    classify_risk,
    clear_question_cache,
    question_by_id,
    question_metadata,
    questions_by_domain,
    questions_by_domain_and_age,
    questions_for_age,
)


@pytest.fixture(autouse=True)
def fresh_bank():
    clear_question_cache()
    yield
    clear_question_cache()


def _write_bank(path: Path, items: list[dict], version: str = "1.0.0") -> Path:
    path.write_text(json.dumps({"metadata": {"version": version}, "questions": items}), encoding="utf-8")
    return path


def _q(qid: str, domain: str, start: int, end: int, order: int) -> dict:
    return {
        "id": qid, "domain": domain, "questionText": f"Question {qid}?",
        "ageRangeMonths": {"start": start, "end": end}, "order": order,
    }


# ---------------------------------------------------------------------------
# Age filtering
# ---------------------------------------------------------------------------


class TestAgeQueries:
    def test_questions_for_24_months_are_inclusive(self):
        ids = {q.id for q in questions_for_age(24)}
        assert ids == {
            "PS-005", "PS-006", "PS-007",
            "FM-005", "FM-006", "FM-007",
            "LANG-006", "LANG-007",
            "GM-006", "GM-007",
        }

    def test_every_returned_question_covers_the_age(self):
        for age in (0, 7, 18, 36, 54):
            for q in questions_for_age(age):
                assert q.age_range_months.start <= age <= q.age_range_months.end

    def test_by_domain_has_all_domains_sorted_by_order(self):
        grouped = questions_by_domain(24)
        assert set(grouped) == set(Domain)
        for items in grouped.values():
            orders = [q.order for q in items]
            assert orders == sorted(orders)
        assert [q.id for q in grouped[Domain.PERSONAL_SOCIAL]] == ["PS-005", "PS-006", "PS-007"]

    def test_empty_domain_present_at_birth(self):
        grouped = questions_by_domain(0)
        assert grouped[Domain.PERSONAL_SOCIAL] == []
        assert [q.id for q in grouped[Domain.FINE_MOTOR]] == ["FM-001"]

    def test_single_domain(self):
        assert [q.id for q in questions_by_domain_and_age("gross_motor", 24)] == ["GM-006", "GM-007"]

    def test_unknown_domain_rejected(self):
        with pytest.raises(ValidationError):
            questions_by_domain_and_age("cognitive", 12)

    @pytest.mark.parametrize("age", [-1, 1.5, True, "12"])
    def test_invalid_age_rejected(self, age):
        with pytest.raises(ValidationError):
            questions_for_age(age)

    def test_question_by_id(self):
        q = question_by_id("LANG-007")
        assert q is not None
        assert q.domain is Domain.LANGUAGE
        assert q.requires_video is True
        assert question_by_id("NOPE-001") is None

    def test_metadata(self):
        meta = question_metadata()
        assert meta.version == "2.1.0"
        assert meta.total_questions == 32


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class TestQuestionBankCache:
    def test_lazy_load_and_invalidate(self, tmp_path):
        path = _write_bank(tmp_path / "bank.json", [_q("A-1", "language", 0, 12, 1)])
        bank = QuestionBank(path)
        assert not bank.loaded
        assert [q.id for q in bank.for_age(6)] == ["A-1"]
        assert bank.loaded

        _write_bank(path, [_q("A-1", "language", 0, 12, 1), _q("A-2", "language", 0, 12, 2)], "1.1.0")
        # no automatic expiry
        assert [q.id for q in bank.for_age(6)] == ["A-1"]

        bank.invalidate()
        assert [q.id for q in bank.for_age(6)] == ["A-1", "A-2"]
        assert bank.metadata().version == "1.1.0"

    def test_clear_question_cache_reloads_singleton(self, tmp_path):
        path = _write_bank(tmp_path / "bank.json", [_q("B-1", "fine_motor", 3, 9, 1)])
        bank = QuestionBank(path)
        original = questions._bank
        questions._bank = bank
        try:
            assert question_by_id("B-1") is not None
            _write_bank(path, [_q("B-2", "fine_motor", 3, 9, 1)])
            assert question_by_id("B-2") is None
            clear_question_cache()
            assert question_by_id("B-2") is not None
        finally:
            questions._bank = original


# ---------------------------------------------------------------------------
# Classification & domain scores
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize("score,expected", [
        (0, RiskLevel.LOW), (49, RiskLevel.LOW), (49.9, RiskLevel.LOW),
        (50, RiskLevel.HIGH), (87.5, RiskLevel.HIGH), (None, RiskLevel.LOW),
    ])
    def test_threshold(self, score, expected):
        assert classify_risk(score) is expected

    def test_domain_scores(self):
        answers = [
            {"domain": "language", "milestone_age_months": 12, "response": True},
            {"domain": "language", "milestone_age_months": 18, "response": "Not Yet"},
            {"domain": "language", "milestone_age_months": 20, "response": "Yes"},
            {"category": "gross_motor", "milestone_age_months": 9, "response": "No Opportunity"},
            # beyond the child's age: not counted
            {"domain": "fine_motor", "milestone_age_months": 30, "response": False},
        ]
        scores = calculate_domain_scores(answers, 24)
        assert scores[Domain.LANGUAGE] == 67
        assert scores[Domain.GROSS_MOTOR] == 0
        assert scores[Domain.FINE_MOTOR] == 0
        assert scores[Domain.PERSONAL_SOCIAL] == 0
