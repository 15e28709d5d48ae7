"""Budget tracker: spend figures derived from the ``cloud_calls`` ledger.

Nothing here keeps a running counter. Each figure is an independent
aggregation over the ledger, so a late-arriving row shows up on the next read.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from organism.models import CloudCall
from organism.policy import PolicySource
from organism.utils import utcnow

LEAN_FRACTION = 0.8

# USD per token: (input, output)
MODEL_RATES: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15 / 1_000_000, 0.60 / 1_000_000),
    "gpt-4o": (5.0 / 1_000_000, 15.0 / 1_000_000),
    "claude-haiku-4-5": (1.0 / 1_000_000, 5.0 / 1_000_000),
    "claude-sonnet-4-5": (3.0 / 1_000_000, 15.0 / 1_000_000),
}
_DEFAULT_RATE = MODEL_RATES["gpt-4o"]


def model_rate(model: str) -> tuple[float, float]:
    """Longest matching prefix wins, so ``gpt-4o-mini-2024`` is billed as mini."""
    for prefix in sorted(MODEL_RATES, key=len, reverse=True):
        if model.startswith(prefix):
            return MODEL_RATES[prefix]
    return _DEFAULT_RATE


def compute_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rate_in, rate_out = model_rate(model)
    return input_tokens * rate_in + output_tokens * rate_out


def record_cloud_call(
    session: Session, *, model: str, task_type: str, reason: str,
    input_tokens: int, output_tokens: int,
) -> CloudCall:
    """Append a ledger row for a successful cloud call (caller commits)."""
    call = CloudCall(
        model=model, task_type=task_type, reason=reason[:500],
        input_tokens=input_tokens, output_tokens=output_tokens,
        cost_usd=compute_cost(model, input_tokens, output_tokens),
    )
    session.add(call)
    return call


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def spend_since(session: Session, since: datetime | None = None) -> float:
    query = select(func.coalesce(func.sum(CloudCall.cost_usd), 0.0))
    if since is not None:
        query = query.where(CloudCall.created_at >= since)
    return float(session.execute(query).scalar() or 0.0)


def today_spend(session: Session, now: datetime | None = None) -> float:
    return spend_since(session, _day_start(now or utcnow()))


def budget_status(session: Session, policy: PolicySource, now: datetime | None = None) -> str:
    """Classify today's spend against ``daily_budget_usd``: normal, lean or exhausted."""
    spent = today_spend(session, now)
    limit = policy.get_float("daily_budget_usd")
    if spent >= limit:
        return "exhausted"
    if spent >= limit * LEAN_FRACTION:
        return "lean"
    return "normal"


def cloud_spend_summary(session: Session, policy: PolicySource, now: datetime | None = None) -> dict:
    now = now or utcnow()
    day_start = _day_start(now)
    today = spend_since(session, day_start)
    budget = policy.get_float("daily_cloud_budget_usd")
    rows = session.execute(
        select(
            CloudCall.model,
            func.count(CloudCall.id),
            func.coalesce(func.sum(CloudCall.cost_usd), 0.0),
        )
        .where(CloudCall.created_at >= day_start)
        .group_by(CloudCall.model)
        .order_by(func.sum(CloudCall.cost_usd).desc())
    ).all()
    return {
        "today": today,
        "week": spend_since(session, now - timedelta(days=7)),
        "all_time": spend_since(session),
        "budget": budget,
        "remaining": max(0.0, budget - today),
        "breakdown": [
            {"model": model, "calls": int(calls), "cost": float(cost)}
            for model, calls, cost in rows
        ],
    }
