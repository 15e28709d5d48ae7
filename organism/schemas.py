"""Pydantic request/response schemas for the Organism API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class OpportunityOut(BaseModel):
    id: int
    title: str
    source: str
    status: str
    evidence_url: str | None = None
    pain_score: float = 0.0
    wtp_score: float = 0.0
    competition_score: float = 0.0
    viability_score: float = 0.0
    weighted_viability: float | None = None
    rating: str | None = None
    created_at: str


class HistoryEntry(BaseModel):
    id: int
    event_type: str
    old_status: str | None = None
    new_status: str | None = None
    payload: dict[str, Any] = {}
    created_at: str


class ValidationOut(BaseModel):
    id: int
    channel: str
    status: str
    artifact: dict[str, Any] = {}
    window_ends_at: str
    payment_received_at: str | None = None
    resolved_at: str | None = None


class OpportunityDetail(OpportunityOut):
    raw_text: str = ""
    plan: str = ""
    history: list[HistoryEntry] = []
    validations: list[ValidationOut] = []


class OpportunityCreate(BaseModel):
    title: str = Field(min_length=1)
    source: str = "manual"
    raw_text: str = ""
    evidence_url: str | None = None
    pain_score: float = 0.0
    wtp_score: float = 0.0
    competition_score: float = 0.0
    viability_score: float = Field(0.0, ge=0, le=100)


class RatingUpdate(BaseModel):
    rating: str | None = None

    @field_validator("rating")
    @classmethod
    def rating_must_be_known(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if v not in ("good", "bad"):
            raise ValueError("rating must be 'good', 'bad' or null")
        return v


class PolicyUpdate(BaseModel):
    value: Any


class ModelSpend(BaseModel):
    model: str
    calls: int
    cost: float


class SpendSummaryOut(BaseModel):
    today: float
    week: float
    all_time: float
    budget: float
    remaining: float
    breakdown: list[ModelSpend] = []


class ApprovalOut(BaseModel):
    id: int
    reason: str
    status: str
    requested_at: str
    resolved_at: str | None = None


class ProposalOut(BaseModel):
    id: int
    file: str
    title: str
    rationale: str
    change: str
    status: str
    created_at: str
    resolved_at: str | None = None


class JobOut(BaseModel):
    id: int
    job_type: str
    status: str
    model: str = ""
    cost_usd: float = 0.0
    error: str | None = None
    input: dict[str, Any] = {}
    output: dict[str, Any] | None = None
    created_at: str
    completed_at: str | None = None


class CycleOut(BaseModel):
    id: int
    status: str
    notes: str | None = None
    started_at: str
    ended_at: str | None = None
    diagnostics: dict[str, Any] = {}


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    jobs: dict[str, int]
    ratings: dict[str, int]
    budget_status: str
    cloud_spend: SpendSummaryOut
    pending_approvals: int
    pending_proposals: int
