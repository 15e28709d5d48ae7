"""Shared business logic for the Organism API and MCP server."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from organism.budget import budget_status, cloud_spend_summary
from organism.evolve import proposal_summary
from organism.models import CloudApproval, LLMJob, Opportunity, Proposal, Validation
from organism.opportunity import STATUSES, current_status, history, status_counts, with_status
from organism.policy import PolicySource
from organism.utils import json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def opportunity_summary(opp: Opportunity, status: str) -> dict[str, Any]:
    return {
        "id": opp.id, "title": opp.title, "source": opp.source, "status": status,
        "evidence_url": opp.evidence_url,
        "pain_score": opp.pain_score, "wtp_score": opp.wtp_score,
        "competition_score": opp.competition_score, "viability_score": opp.viability_score,
        "weighted_viability": opp.weighted_viability, "rating": opp.rating,
        "created_at": opp.created_at.isoformat(),
    }


def validation_summary(v: Validation) -> dict[str, Any]:
    return {
        "id": v.id, "channel": v.channel, "status": v.status,
        "artifact": json_parse(v.artifact_json),
        "window_ends_at": v.window_ends_at.isoformat(),
        "payment_received_at": v.payment_received_at.isoformat() if v.payment_received_at else None,
        "resolved_at": v.resolved_at.isoformat() if v.resolved_at else None,
    }


def opportunity_detail(session: Session, opp: Opportunity, status: str) -> dict[str, Any]:
    base = opportunity_summary(opp, status)
    base["raw_text"] = opp.raw_text
    base["plan"] = opp.plan
    base["history"] = history(session, opp.id)
    base["validations"] = [validation_summary(v) for v in opp.validations]
    return base


def approval_summary(a: CloudApproval) -> dict[str, Any]:
    return {
        "id": a.id, "reason": a.reason, "status": a.status,
        "requested_at": a.requested_at.isoformat(),
        "resolved_at": a.resolved_at.isoformat() if a.resolved_at else None,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def query_opportunities(
    session: Session, *, status: str | None = None, source: str | None = None,
    search: str | None = None, sort_by: str = "viability", sort_dir: str = "desc",
    page: int = 1, per_page: int = 100,
) -> tuple[list[dict], int]:
    statuses = [s.strip() for s in status.split(",") if s.strip() in STATUSES] if status else None
    if statuses == []:
        return [], 0
    items = [opportunity_summary(opp, st) for opp, st, _ in with_status(session, statuses)]
    if source:
        q = source.lower()
        items = [i for i in items if q in (i["source"] or "").lower()]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["title"].lower()]

    def sort_key(item: dict):
        if sort_by == "weighted":
            return item["weighted_viability"] if item["weighted_viability"] is not None else -1
        if sort_by == "created":
            return item["created_at"]
        if sort_by == "title":
            return item["title"].lower()
        return item["viability_score"] or 0

    items.sort(key=sort_key, reverse=(sort_dir == "desc"))
    total = len(items)
    start = (page - 1) * per_page
    return items[start:start + per_page], total


def get_opportunity(session: Session, opportunity_id: int) -> tuple[Opportunity, str] | None:
    opp = session.get(Opportunity, opportunity_id)
    if opp is None:
        return None
    return opp, current_status(session, opportunity_id)


def list_approvals(session: Session, status: str | None = "pending") -> list[dict[str, Any]]:
    query = select(CloudApproval).order_by(CloudApproval.id.desc())
    if status:
        query = query.where(CloudApproval.status == status)
    return [approval_summary(a) for a in session.execute(query).scalars().all()]


def list_proposals(session: Session, status: str | None = "pending") -> list[dict[str, Any]]:
    query = select(Proposal).order_by(Proposal.id.desc())
    if status:
        query = query.where(Proposal.status == status)
    return [proposal_summary(p) for p in session.execute(query).scalars().all()]


def compute_stats(session: Session, policy: PolicySource) -> dict[str, Any]:
    jobs = dict(session.execute(
        select(LLMJob.status, func.count(LLMJob.id)).group_by(LLMJob.status)
    ).all())
    ratings = Counter(
        r for r in session.execute(select(Opportunity.rating)).scalars().all() if r
    )
    pending_approvals = session.execute(
        select(func.count(CloudApproval.id)).where(CloudApproval.status == "pending")
    ).scalar() or 0
    pending_proposals = session.execute(
        select(func.count(Proposal.id)).where(Proposal.status == "pending")
    ).scalar() or 0
    by_status = status_counts(session)
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "jobs": {k: int(v) for k, v in jobs.items()},
        "ratings": dict(ratings),
        "budget_status": budget_status(session, policy),
        "cloud_spend": cloud_spend_summary(session, policy),
        "pending_approvals": int(pending_approvals),
        "pending_proposals": int(pending_proposals),
    }
