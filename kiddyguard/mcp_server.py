from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from kiddyguard import lifecycle, services
from kiddyguard.config import configure_logging
from kiddyguard.db import init_db, session_scope
from kiddyguard.errors import KiddyGuardError, OperationResult
from kiddyguard.models import ClinicalRiskLevel
from kiddyguard.questions import DOMAIN_LABELS, RISK_THRESHOLD, questions_by_domain

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def kiddyguard_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "KiddyGuard",
    instructions=(
        "KiddyGuard holds paid developmental screenings awaiting clinical review. "
        "Start with list_pending_reviews(), inspect one with get_screening(id), "
        "optionally mark it with open_review(id), then submit_clinical_review(id, ...). "
        "Each screening accepts exactly one review."
    ),
    lifespan=kiddyguard_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(result: OperationResult):
    if not result.success:
        return {"error": result.error, "kind": result.error_kind}
    data = result.data
    if isinstance(data, list):
        return [item.model_dump(mode="json") for item in data]
    return data.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("kiddyguard://overview")
def kiddyguard_overview() -> str:
    """Overview of KiddyGuard: screening lifecycle, domains and risk levels."""
    return json.dumps({
        "system": "KiddyGuard: developmental screening with clinician review",
        "lifecycle": ["PENDING_PAYMENT", "PENDING_REVIEW", "UNDER_REVIEW", "COMPLETED"],
        "pending_review": "Payment intent SETTLED and no clinical review yet.",
        "domains": {d.value: label for d, label in DOMAIN_LABELS.items()},
        "risk_level": f"High when the risk score is >= {RISK_THRESHOLD}, otherwise Low.",
        "clinical_risk_levels": [level.value for level in ClinicalRiskLevel],
        "workflow": [
            "1. list_pending_reviews(): queue of paid, unreviewed screenings, newest first.",
            "2. get_screening(id): screening details and any existing review.",
            "3. open_review(id): mark as UNDER_REVIEW (optional).",
            "4. submit_clinical_review(id, notes, risk_level): completes the screening.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Reviews
# ---------------------------------------------------------------------------


@mcp.tool()
def list_pending_reviews() -> list[dict] | dict:
    """List paid screenings that still need a clinical review, newest first."""
    with session_scope() as session:
        return _result(lifecycle.list_pending_reviews(session))


@mcp.tool()
def get_screening(screening_id: str) -> dict:
    """Get a screening's scores, summary and status, plus its clinical review if one exists."""
    with session_scope() as session:
        return _result(services.get_screening_report(session, screening_id))


@mcp.tool()
def open_review(screening_id: str) -> dict:
    """Mark a paid screening as UNDER_REVIEW."""
    with session_scope() as session:
        return _result(lifecycle.open_review(session, screening_id))


@mcp.tool()
def submit_clinical_review(
    screening_id: str, notes: str | None = None,
    risk_level: str | None = None, reviewer: str | None = None,
) -> dict:
    """Submit the clinical review for a screening and mark it COMPLETED.

    Args:
        screening_id: Screening UUID from list_pending_reviews().
        notes: Free-text clinical notes for the family.
        risk_level: LOW, MODERATE or HIGH.
        reviewer: Display name of the reviewing clinician.

    A screening accepts exactly one review; a second submission returns a
    ``conflict`` error.
    """
    with session_scope() as session:
        return _result(lifecycle.create_review(
            session, screening_id, notes=notes, risk_level=risk_level, reviewer_id=reviewer,
        ))


# ---------------------------------------------------------------------------
# Tools: Questions
# ---------------------------------------------------------------------------


@mcp.tool()
def questions_for_age(age_months: int) -> dict:
    """Milestone questions that apply to a child of the given age, grouped by domain."""
    try:
        grouped = questions_by_domain(age_months)
    except KiddyGuardError as exc:
        return {"error": exc.message, "kind": exc.kind}
    return {
        domain.value: [q.model_dump(mode="json", by_alias=True) for q in items]
        for domain, items in grouped.items()
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the KiddyGuard MCP server over stdio."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
