from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from organism import services
from organism.brain import resolve_cloud_request
from organism.budget import cloud_spend_summary
from organism.db import init_db, session_scope
from organism.evolve import resolve_proposal
from organism.jobs import list_jobs, requeue_job
from organism.opportunity import TRANSITIONS, rate
from organism.policy import Policy
from organism.scheduler import recent_cycles
from organism.validation import record_payment

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def organism_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Organism",
    instructions=(
        "Organism is an autonomous agent that finds, plans and validates business "
        "opportunities on a limited inference budget. Use these tools to watch the "
        "pipeline and to answer the decisions it escalates to a human. Start with "
        "get_stats(), then list_approvals() and list_proposals() for pending decisions."
    ),
    lifespan=organism_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("organism://overview")
def organism_overview() -> str:
    """Overview of Organism: lifecycle, budget gate and operator actions."""
    return json.dumps({
        "system": "Organism: autonomous opportunity discovery and validation",
        "lifecycle": {status: sorted(targets) for status, targets in TRANSITIONS.items()},
        "budget": (
            "Cloud calls are free to proceed under the daily cloud budget. Beyond it, each "
            "call opens an approval request that times out to the local model after 5 minutes."
        ),
        "workflow": [
            "1. get_stats() for the pipeline, job queue and spend.",
            "2. list_approvals() and approve_cloud_request(id) / reject_cloud_request(id).",
            "3. list_proposals() and resolve_proposal_tool(id, approved).",
            "4. list_opportunities(status) and rate_opportunity(id, 'good'|'bad').",
            "5. record_payment_tool(id) when a preorder is paid.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Pipeline
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Pipeline counts by status, job queue counts, budget status and cloud spend."""
    with session_scope() as session:
        return services.compute_stats(session, Policy())


@mcp.tool()
def list_opportunities(
    status: str | None = None, source: str | None = None, search: str | None = None,
    sort_by: str = "viability", limit: int = 50,
) -> list[dict]:
    """List opportunities.

    Args:
        status: Comma-separated statuses, e.g. "new,pursue,building".
        source: Substring of the source tag.
        search: Free-text search in the title.
        sort_by: viability, weighted, created or title.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items, _ = services.query_opportunities(
            session, status=status, source=source, search=search, sort_by=sort_by,
            page=1, per_page=max(1, min(limit, 500)),
        )
        return items


@mcp.tool()
def get_opportunity(opportunity_id: int) -> dict:
    """Full detail for one opportunity, including its status history and validations."""
    with session_scope() as session:
        found = services.get_opportunity(session, opportunity_id)
        if found is None:
            return {"error": f"Opportunity {opportunity_id} not found"}
        return services.opportunity_detail(session, *found)


@mcp.tool()
def rate_opportunity(opportunity_id: int, rating: str | None = None) -> dict:
    """Rate an opportunity 'good' or 'bad' (omit to clear). Ratings feed the source weights."""
    with session_scope() as session:
        try:
            opp = rate(session, opportunity_id, rating)
        except ValueError as exc:
            return {"error": str(exc)}
        if opp is None:
            return {"error": f"Opportunity {opportunity_id} not found"}
        session.commit()
        return {"ok": True, "opportunity_id": opportunity_id, "rating": opp.rating}


@mcp.tool()
def record_payment_tool(opportunity_id: int) -> dict:
    """Record that a preorder for this opportunity was paid."""
    with session_scope() as session:
        validation = record_payment(session, opportunity_id)
        if validation is None:
            return {"error": f"Opportunity {opportunity_id} has no live validation"}
        return {"ok": True, "validation_id": validation.id}


# ---------------------------------------------------------------------------
# Tools: Budget
# ---------------------------------------------------------------------------


@mcp.tool()
def get_spend() -> dict:
    """Cloud spend today, over 7 days and all time, with the per-model breakdown for today."""
    with session_scope() as session:
        return cloud_spend_summary(session, Policy())


@mcp.tool()
def list_approvals(status: str | None = "pending") -> list[dict]:
    """Cloud budget approval requests. Pass status=None for all of them."""
    with session_scope() as session:
        return services.list_approvals(session, status)


@mcp.tool()
def approve_cloud_request(approval_id: int) -> dict:
    """Allow one over-budget cloud call. Only pending requests can be approved."""
    with session_scope() as session:
        if not resolve_cloud_request(session, approval_id, approved=True):
            return {"error": f"Request {approval_id} is not pending"}
        return {"ok": True}


@mcp.tool()
def reject_cloud_request(approval_id: int) -> dict:
    """Refuse an over-budget cloud call; the request falls back to the local model."""
    with session_scope() as session:
        if not resolve_cloud_request(session, approval_id, approved=False):
            return {"error": f"Request {approval_id} is not pending"}
        return {"ok": True}


# ---------------------------------------------------------------------------
# Tools: Proposals, jobs, cycles
# ---------------------------------------------------------------------------


@mcp.tool()
def list_proposals(status: str | None = "pending") -> list[dict]:
    """Self-improvement proposals with their diffs."""
    with session_scope() as session:
        return services.list_proposals(session, status)


@mcp.tool()
def resolve_proposal_tool(proposal_id: int, approved: bool) -> dict:
    """Approve or reject a pending proposal. Approval records the decision only."""
    with session_scope() as session:
        if not resolve_proposal(session, proposal_id, approved):
            return {"error": f"Proposal {proposal_id} is not pending"}
        return {"ok": True}


@mcp.tool()
def list_jobs_tool(status: str | None = None, limit: int = 50) -> list[dict]:
    """LLM jobs, newest first. status: pending, locked, running, done or failed."""
    with session_scope() as session:
        return list_jobs(session, status, max(1, min(limit, 500)))


@mcp.tool()
def requeue_job_tool(job_id: int) -> dict:
    """Put a copy of a failed or stuck job back on the queue."""
    with session_scope() as session:
        new_id = requeue_job(session, job_id)
        if new_id is None:
            return {"error": f"Job {job_id} not found"}
        return {"job_id": new_id}


@mcp.tool()
def list_cycles(limit: int = 20) -> list[dict]:
    """Recent heartbeat cycles with their status, notes and diagnostics."""
    with session_scope() as session:
        return recent_cycles(session, max(1, min(limit, 200)))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Organism MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
