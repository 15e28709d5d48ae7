from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from organism import services
from organism.brain import resolve_cloud_request
from organism.budget import cloud_spend_summary
from organism.db import init_db, session_generator
from organism.evolve import resolve_proposal
from organism.jobs import list_jobs, requeue_job
from organism.opportunity import create_opportunity, rate
from organism.policy import DEFAULT_POLICIES, TUNABLE_BOUNDS, Policy, PolicySource, clamp_policy_value
from organism.scheduler import recent_cycles
from organism.schemas import (
    ApprovalOut,
    CycleOut,
    JobOut,
    OpportunityCreate,
    OpportunityDetail,
    OpportunityOut,
    PolicyUpdate,
    ProposalOut,
    RatingUpdate,
    SpendSummaryOut,
    StatsOut,
)
from organism.validation import record_payment

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Organism",
    version="0.1.0",
    description=(
        "Operator API for an autonomous opportunity-hunting agent. "
        "Inspect the pipeline, answer budget approval requests, review "
        "self-improvement proposals and feed back ratings and payments. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Opportunities", "description": "Browse, add and rate opportunities."},
        {"name": "Budget", "description": "Cloud spend and over-budget approval requests."},
        {"name": "Proposals", "description": "Self-improvement proposals awaiting a human decision."},
        {"name": "Jobs", "description": "The LLM job queue."},
        {"name": "Stats", "description": "Aggregate statistics, cycles and policies."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def policy_source() -> PolicySource:
    return Policy()


def _opportunity_or_404(session: Session, opportunity_id: int):
    found = services.get_opportunity(session, opportunity_id)
    if found is None:
        raise HTTPException(404, "Opportunity not found")
    return found


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


class OpportunityListResponse(BaseModel):
    items: list[OpportunityOut]
    total: int


@app.get("/api/opportunities", response_model=OpportunityListResponse, tags=["Opportunities"],
         summary="List opportunities with filtering, sorting, and pagination")
async def list_opportunities(
    status: str | None = Query(None, description="Comma-separated statuses, e.g. new,pursue"),
    source: str | None = Query(None, description="Substring of the source tag"),
    search: str | None = Query(None, description="Free-text search in the title"),
    sort_by: str = Query("viability", description="viability, weighted, created or title"),
    sort_dir: str = Query("desc", description="asc or desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_opportunities(
        session, status=status, source=source, search=search,
        sort_by=sort_by, sort_dir=sort_dir, page=page, per_page=per_page,
    )
    return {"items": items, "total": total}


@app.post("/api/opportunities", response_model=OpportunityOut, status_code=201,
          tags=["Opportunities"], summary="Add an opportunity by hand (duplicate evidence URLs return the existing one)")
async def add_opportunity(body: OpportunityCreate, session: Session = Depends(db_session)):
    opp, _ = create_opportunity(session, **body.model_dump())
    session.commit()
    found = services.get_opportunity(session, opp.id)
    return services.opportunity_summary(*found)  # type: ignore[misc]


@app.get("/api/opportunities/{opportunity_id}", response_model=OpportunityDetail,
         tags=["Opportunities"], summary="Opportunity detail with status history and validations")
async def get_opportunity(opportunity_id: int, session: Session = Depends(db_session)):
    opp, status = _opportunity_or_404(session, opportunity_id)
    return services.opportunity_detail(session, opp, status)


@app.put("/api/opportunities/{opportunity_id}/rating", response_model=OpportunityOut,
         tags=["Opportunities"], summary="Rate an opportunity good/bad (null clears); status is untouched")
async def rate_opportunity(opportunity_id: int, body: RatingUpdate, session: Session = Depends(db_session)):
    _opportunity_or_404(session, opportunity_id)
    rate(session, opportunity_id, body.rating)
    session.commit()
    return services.opportunity_summary(*_opportunity_or_404(session, opportunity_id))


@app.post("/api/opportunities/{opportunity_id}/payment", tags=["Opportunities"],
          summary="Record a payment against the opportunity's live validation")
async def payment(opportunity_id: int, session: Session = Depends(db_session)):
    _opportunity_or_404(session, opportunity_id)
    validation = record_payment(session, opportunity_id)
    if validation is None:
        raise HTTPException(409, "Opportunity has no live validation")
    return {"ok": True, "validation_id": validation.id}


# ---------------------------------------------------------------------------
# Routes: Budget
# ---------------------------------------------------------------------------


@app.get("/api/spend", response_model=SpendSummaryOut, tags=["Budget"],
         summary="Cloud spend today, this week and all time, with per-model breakdown")
async def spend(session: Session = Depends(db_session), policy: PolicySource = Depends(policy_source)):
    return cloud_spend_summary(session, policy)


@app.get("/api/approvals", response_model=list[ApprovalOut], tags=["Budget"],
         summary="List cloud budget approval requests (pending by default)")
async def approvals(
    status: str | None = Query("pending", description="pending, approved, rejected, timeout; empty for all"),
    session: Session = Depends(db_session),
):
    return services.list_approvals(session, status or None)


@app.post("/api/approvals/{approval_id}/approve", tags=["Budget"], summary="Approve a pending request")
async def approve(approval_id: int, session: Session = Depends(db_session)):
    if not resolve_cloud_request(session, approval_id, approved=True):
        raise HTTPException(409, "Request is not pending")
    return {"ok": True}


@app.post("/api/approvals/{approval_id}/reject", tags=["Budget"], summary="Reject a pending request")
async def reject(approval_id: int, session: Session = Depends(db_session)):
    if not resolve_cloud_request(session, approval_id, approved=False):
        raise HTTPException(409, "Request is not pending")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.get("/api/proposals", response_model=list[ProposalOut], tags=["Proposals"],
         summary="List self-improvement proposals (pending by default)")
async def proposals(
    status: str | None = Query("pending", description="pending, approved, rejected; empty for all"),
    session: Session = Depends(db_session),
):
    return services.list_proposals(session, status or None)


@app.post("/api/proposals/{proposal_id}/approve", tags=["Proposals"], summary="Approve a pending proposal")
async def approve_proposal(proposal_id: int, session: Session = Depends(db_session)):
    if not resolve_proposal(session, proposal_id, approved=True):
        raise HTTPException(409, "Proposal is not pending")
    return {"ok": True}


@app.post("/api/proposals/{proposal_id}/reject", tags=["Proposals"], summary="Reject a pending proposal")
async def reject_proposal(proposal_id: int, session: Session = Depends(db_session)):
    if not resolve_proposal(session, proposal_id, approved=False):
        raise HTTPException(409, "Proposal is not pending")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------


@app.get("/api/jobs", response_model=list[JobOut], tags=["Jobs"], summary="List LLM jobs, newest first")
async def jobs(
    status: str | None = Query(None, description="pending, locked, running, done, failed"),
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return list_jobs(session, status, limit)


@app.post("/api/jobs/{job_id}/requeue", tags=["Jobs"], summary="Copy a job's input into a new pending job")
async def requeue(job_id: int, session: Session = Depends(db_session)):
    new_id = requeue_job(session, job_id)
    if new_id is None:
        raise HTTPException(404, "Job not found")
    return {"job_id": new_id}


# ---------------------------------------------------------------------------
# Routes: Stats, cycles, policies
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Pipeline, job and spend statistics")
async def stats(session: Session = Depends(db_session), policy: PolicySource = Depends(policy_source)):
    return services.compute_stats(session, policy)


@app.get("/api/cycles", response_model=list[CycleOut], tags=["Stats"], summary="Recent heartbeat cycles")
async def cycles(limit: int = Query(20, ge=1, le=200), session: Session = Depends(db_session)):
    return recent_cycles(session, limit)


@app.get("/api/policies", tags=["Stats"], summary="Current policy values")
async def policies(policy: PolicySource = Depends(policy_source)):
    return policy.all()


@app.put("/api/policies/{key}", tags=["Stats"], summary="Set a policy value (tunable keys are clamped to their bounds)")
async def set_policy(key: str, body: PolicyUpdate, policy: PolicySource = Depends(policy_source)):
    if key not in DEFAULT_POLICIES:
        raise HTTPException(404, f"Unknown policy '{key}'")
    value = body.value
    if isinstance(DEFAULT_POLICIES[key], dict):
        if not isinstance(value, dict):
            raise HTTPException(400, f"Policy '{key}' must be an object")
    elif key in TUNABLE_BOUNDS:
        value = clamp_policy_value(key, value)
        if value is None:
            raise HTTPException(400, f"Policy '{key}' must be numeric")
    else:
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise HTTPException(400, f"Policy '{key}' must be numeric") from None
        if value < 0:
            raise HTTPException(400, f"Policy '{key}' must not be negative")
    policy.set(key, value)
    return {key: value}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("organism.app:app", host="127.0.0.1", port=8002)


if __name__ == "__main__":
    main()
