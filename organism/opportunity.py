"""Opportunity lifecycle, projected from the append-only ``opportunity_events`` log.

An opportunity's status is the ``new_status`` of its most recent
``status_change`` event (highest id), or ``new`` when it has none. Nothing
ever updates a status in place: a transition is an appended row, and every
transition is validated against :data:`TRANSITIONS` first.

Lifecycle: new -> reviewing -> queued_for_planning -> pursue -> building -> shipped,
with exits to discarded (after planning), killed (from building) and error.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.orm import Session

from organism.events import record_event
from organism.models import Opportunity, OpportunityEvent, Validation
from organism.policy import PolicySource
from organism.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

STATUS_CHANGE = "status_change"

STATUSES = (
    "new", "reviewing", "queued_for_planning", "pursue", "building",
    "shipped", "killed", "discarded", "error",
)
TERMINAL_STATUSES = frozenset({"shipped", "killed", "discarded", "error"})

TRANSITIONS: dict[str, frozenset[str]] = {
    "new": frozenset({"reviewing"}),
    "reviewing": frozenset({"queued_for_planning", "error"}),
    "queued_for_planning": frozenset({"pursue", "discarded", "error"}),
    "pursue": frozenset({"building", "error"}),
    "building": frozenset({"shipped", "killed", "error"}),
    **{s: frozenset() for s in TERMINAL_STATUSES},
}

VALID_RATINGS = {"good", "bad"}


class InvalidTransition(ValueError):
    """A status move that the lifecycle does not allow, or that lost a race."""

    def __init__(self, opportunity_id: int, current: str, requested: str, reason: str = ""):
        self.opportunity_id = opportunity_id
        self.current = current
        self.requested = requested
        super().__init__(
            reason or f"Opportunity {opportunity_id}: {current} -> {requested} is not allowed"
        )


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def _current_state_subquery():
    """(opportunity_id, status, entered_at) of each opportunity's latest status event."""
    latest = (
        select(
            OpportunityEvent.opportunity_id.label("opportunity_id"),
            func.max(OpportunityEvent.id).label("event_id"),
        )
        .where(OpportunityEvent.event_type == STATUS_CHANGE)
        .group_by(OpportunityEvent.opportunity_id)
        .subquery()
    )
    return (
        select(
            latest.c.opportunity_id,
            OpportunityEvent.new_status.label("status"),
            OpportunityEvent.created_at.label("entered_at"),
        )
        .join(OpportunityEvent, OpportunityEvent.id == latest.c.event_id)
        .subquery()
    )


def with_status(session: Session, statuses: list[str] | None = None, order_by=None):
    """Rows of ``(Opportunity, status, entered_at)`` using the latest-event projection."""
    current = _current_state_subquery()
    status_col = func.coalesce(current.c.status, "new")
    query = (
        select(Opportunity, status_col.label("status"), current.c.entered_at)
        .outerjoin(current, current.c.opportunity_id == Opportunity.id)
    )
    if statuses:
        query = query.where(status_col.in_(statuses))
    if order_by is not None:
        query = query.order_by(*order_by)
    else:
        query = query.order_by(Opportunity.id)
    return session.execute(query).all()


def current_status(session: Session, opportunity_id: int) -> str:
    row = session.execute(
        select(OpportunityEvent.new_status)
        .where(
            OpportunityEvent.opportunity_id == opportunity_id,
            OpportunityEvent.event_type == STATUS_CHANGE,
        )
        .order_by(OpportunityEvent.id.desc())
        .limit(1)
    ).first()
    return row[0] if row and row[0] else "new"


def status_counts(session: Session) -> dict[str, int]:
    return dict(Counter(status for _, status, _ in with_status(session)))


def history(session: Session, opportunity_id: int) -> list[dict[str, Any]]:
    events = session.execute(
        select(OpportunityEvent)
        .where(OpportunityEvent.opportunity_id == opportunity_id)
        .order_by(OpportunityEvent.id)
    ).scalars().all()
    return [
        {"id": e.id, "event_type": e.event_type, "old_status": e.old_status,
         "new_status": e.new_status, "payload": json_parse(e.payload_json),
         "created_at": e.created_at.isoformat()}
        for e in events
    ]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def transition(
    session: Session,
    opportunity_id: int,
    new_status: str,
    payload: dict[str, Any] | None = None,
    expected: str | None = None,
) -> OpportunityEvent:
    """Append a status change after validating it (caller must commit).

    With *expected*, the move only happens if the opportunity is still in that
    status; otherwise :class:`InvalidTransition` tells the caller it lost.
    """
    if new_status not in TRANSITIONS:
        raise InvalidTransition(opportunity_id, "?", new_status, f"Unknown status {new_status!r}")
    current = current_status(session, opportunity_id)
    if expected is not None and current != expected:
        raise InvalidTransition(
            opportunity_id, current, new_status,
            f"Opportunity {opportunity_id} is {current}, expected {expected}",
        )
    if new_status not in TRANSITIONS[current]:
        raise InvalidTransition(opportunity_id, current, new_status)
    event = OpportunityEvent(
        opportunity_id=opportunity_id,
        event_type=STATUS_CHANGE,
        old_status=current,
        new_status=new_status,
        payload_json=json_dump(payload or {}),
    )
    session.add(event)
    session.flush()
    log.info("Opportunity %s: %s -> %s", opportunity_id, current, new_status)
    return event


def create_opportunity(
    session: Session,
    *,
    title: str,
    source: str = "",
    raw_text: str = "",
    evidence_url: str | None = None,
    pain_score: float = 0.0,
    wtp_score: float = 0.0,
    competition_score: float = 0.0,
    viability_score: float = 0.0,
) -> tuple[Opportunity, bool]:
    """Insert a sensed opportunity with its initial ``new`` event (caller must commit).

    Returns ``(opportunity, created)``; a duplicate ``evidence_url`` yields the
    existing row and ``False``.
    """
    if evidence_url:
        existing = session.execute(
            select(Opportunity).where(Opportunity.evidence_url == evidence_url)
        ).scalars().first()
        if existing is not None:
            return existing, False
    opp = Opportunity(
        title=title, source=source, raw_text=raw_text, evidence_url=evidence_url,
        pain_score=pain_score, wtp_score=wtp_score,
        competition_score=competition_score, viability_score=viability_score,
    )
    session.add(opp)
    session.flush()
    session.add(OpportunityEvent(
        opportunity_id=opp.id, event_type=STATUS_CHANGE,
        old_status=None, new_status="new", payload_json=json_dump({"source": source}),
    ))
    session.flush()
    return opp, True


def rate(session: Session, opportunity_id: int, rating: str | None) -> Opportunity | None:
    """Record an operator rating. Ratings never touch status (caller must commit)."""
    if rating is not None:
        rating = rating.strip().lower()
        if rating not in VALID_RATINGS:
            raise ValueError(f"rating must be one of {sorted(VALID_RATINGS)} or null")
    opp = session.get(Opportunity, opportunity_id)
    if opp is None:
        return None
    opp.rating = rating
    opp.rated_at = utcnow() if rating else None
    return opp


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def source_weight(source: str, weights: dict[str, Any]) -> float:
    """First weight key found (case-insensitively) inside *source*, else 1.0."""
    tag = (source or "").lower()
    for key, weight in weights.items():
        if key and key.lower() in tag:
            try:
                return float(weight)
            except (TypeError, ValueError):
                log.warning("Ignoring non-numeric source weight %s=%r", key, weight)
    return 1.0


def rank_candidates(session: Session, policy: PolicySource) -> list[tuple[Opportunity, float, float]]:
    """``(opportunity, weight, weighted_viability)`` for every ``new`` candidate above the floor.

    Sorted by weighted viability, descending. The sort is stable, so ties keep
    the store order (viability desc, then id).
    """
    floor = policy.get_float("min_viability_score")
    weights = policy.get_dict("source_weights")
    rows = with_status(
        session, ["new"],
        order_by=(Opportunity.viability_score.desc(), Opportunity.id),
    )
    ranked = []
    for opp, _, _ in rows:
        if (opp.viability_score or 0) < floor:
            continue
        weight = source_weight(opp.source, weights)
        ranked.append((opp, weight, (opp.viability_score or 0) * weight))
    ranked.sort(key=lambda r: r[2], reverse=True)
    return ranked


def select_top(session: Session, policy: PolicySource) -> Opportunity | None:
    """Pick the best ``new`` candidate and move it to ``reviewing`` in the same step.

    If another loop moved a candidate first, the next one is tried.
    """
    for opp, weight, weighted in rank_candidates(session, policy):
        try:
            transition(
                session, opp.id, "reviewing",
                {"source_weight": weight, "weighted_viability": weighted},
                expected="new",
            )
        except InvalidTransition:
            log.info("Opportunity %s was taken by another worker", opp.id)
            continue
        opp.weighted_viability = weighted
        session.commit()
        log.info(
            "Selected opportunity %s (viability %.1f x weight %.2f = %.1f)",
            opp.id, opp.viability_score, weight, weighted,
        )
        return opp
    return None


# ---------------------------------------------------------------------------
# Zombie reaping
# ---------------------------------------------------------------------------


def _has_paid_validation():
    """A converted validation, or a live one that already received a payment."""
    return exists().where(and_(
        Validation.opportunity_id == Opportunity.id,
        or_(
            Validation.status == "converted",
            and_(Validation.status == "live", Validation.payment_received_at.is_not(None)),
        ),
    ))


def kill_zombies(session: Session, policy: PolicySource, now: datetime | None = None) -> list[int]:
    """Kill opportunities stuck in ``building`` for more than ``zombie_kill_days``.

    Opportunities with a converted or paid validation are never zombies. Running this
    twice in a row kills nothing the second time.
    """
    days = policy.get_float("zombie_kill_days")
    cutoff = (now or utcnow()) - timedelta(days=days)
    current = _current_state_subquery()
    candidates = session.execute(
        select(Opportunity.id, Opportunity.title)
        .join(current, current.c.opportunity_id == Opportunity.id)
        .where(
            current.c.status == "building",
            current.c.entered_at < cutoff,
            ~_has_paid_validation(),
        )
    ).all()
    killed: list[int] = []
    for opp_id, title in candidates:
        try:
            transition(session, opp_id, "killed", {"reason": "zombie", "after_days": days}, expected="building")
        except InvalidTransition:
            continue
        record_event(session, "zombie_killed", {"opportunity_id": opp_id, "title": title, "after_days": days})
        killed.append(opp_id)
    session.commit()
    if killed:
        log.warning("Killed %d zombie opportunities: %s", len(killed), killed)
    return killed
