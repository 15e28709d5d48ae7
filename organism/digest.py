"""Daily digest: one plain-text report per calendar day for the operator."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from organism.budget import cloud_spend_summary
from organism.db import SessionFactory, session_scope
from organism.events import latest_event, record_event
from organism.models import CloudApproval, Cycle, Opportunity, Proposal, Validation
from organism.notify import LogNotifier, Notifier
from organism.opportunity import status_counts, with_status
from organism.policy import Policy, PolicySource
from organism.utils import utcnow

log = logging.getLogger(__name__)

DIGEST_FILENAME = "latest_digest.md"


def _usd(value: float) -> str:
    return f"${value:.2f}"


def _hr(char: str = "-", length: int = 50) -> str:
    return char * length


def digest_due(session: Session, now: datetime | None = None) -> bool:
    last = latest_event(session, "digest_sent")
    return last is None or last.created_at.date() < (now or utcnow()).date()


def build_digest(session: Session, policy: PolicySource, now: datetime | None = None) -> str:
    now = now or utcnow()
    spend = cloud_spend_summary(session, policy, now)
    spend_pct = round(spend["today"] / spend["budget"] * 100) if spend["budget"] > 0 else 0
    pipeline = status_counts(session)

    top = with_status(
        session, ["new"], order_by=(Opportunity.viability_score.desc(), Opportunity.id),
    )[:5]
    live = session.execute(
        select(Validation, Opportunity.title)
        .join(Opportunity, Opportunity.id == Validation.opportunity_id)
        .where(Validation.status == "live")
        .order_by(Validation.window_ends_at)
    ).all()
    cycles = dict(session.execute(
        select(Cycle.status, func.count(Cycle.id))
        .where(Cycle.started_at >= now - timedelta(hours=24))
        .group_by(Cycle.status)
    ).all())
    pending_approvals = session.execute(
        select(func.count(CloudApproval.id)).where(CloudApproval.status == "pending")
    ).scalar() or 0
    pending_proposals = session.execute(
        select(func.count(Proposal.id)).where(Proposal.status == "pending")
    ).scalar() or 0

    lines = [
        _hr("="), "  ORGANISM DAILY DIGEST", f"  {now:%A, %B %d, %Y}", _hr("="), "",
        "  SPEND", _hr(),
        f"  Cloud today:    {_usd(spend['today'])} / {_usd(spend['budget'])} ({spend_pct}%)",
        f"  Cloud 7-day:    {_usd(spend['week'])}",
        f"  Cloud all-time: {_usd(spend['all_time'])}",
    ]
    if spend["remaining"] < 1:
        lines.append("  CRITICAL: cloud budget nearly exhausted.")

    lines += ["", "  PIPELINE", _hr()]
    for status in ("new", "reviewing", "queued_for_planning", "pursue", "building",
                   "shipped", "killed", "discarded", "error"):
        lines.append(f"  {status + ':':<22}{pipeline.get(status, 0)}")

    if top:
        lines += ["", "  TOP OPPORTUNITIES", _hr()]
        for i, (opp, _, _) in enumerate(top, 1):
            lines.append(f"  {i}. [viability: {opp.viability_score:.0f}] {opp.title[:60]}")
            lines.append(f"     {opp.source} | pain: {opp.pain_score:.0f} | wtp: {opp.wtp_score:.0f}")

    if live:
        lines += ["", "  VALIDATIONS LIVE", _hr()]
        for validation, title in live:
            hours_left = (validation.window_ends_at - now).total_seconds() / 3600
            paid = "paid" if validation.payment_received_at else "no payment yet"
            lines.append(f"  {title[:55]} ({paid}, {max(0, round(hours_left))}h left)")

    lines += [
        "", "  CYCLE HEALTH (24h)", _hr(),
        f"  Success: {cycles.get('success', 0)}  Failed: {cycles.get('failed', 0)}  "
        f"Exhausted: {cycles.get('budget_exhausted', 0)}",
        "", _hr("="), "  NEEDS YOU", _hr("="),
    ]
    actions = []
    if pending_approvals:
        actions.append(f"Answer {pending_approvals} cloud budget approval request(s)")
    if pending_proposals:
        actions.append(f"Review {pending_proposals} self-improvement proposal(s)")
    if pipeline.get("error", 0):
        actions.append(f"Look at {pipeline['error']} opportunity(ies) in error")
    if not actions:
        actions.append("Nothing urgent. Let the organism run.")
    lines += [f"  -> {a}" for a in actions]
    lines.append("")
    return "\n".join(lines)


class DigestWriter:
    def __init__(
        self,
        data_dir: Path,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
    ):
        self.data_dir = Path(data_dir)
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory
        self.notifier = notifier or LogNotifier()

    async def maybe_send(self, now: datetime | None = None) -> str | None:
        """Write and send today's digest unless it already went out. Returns the text."""
        now = now or utcnow()
        with session_scope(self._session_factory) as session:
            if not digest_due(session, now):
                return None
            text = build_digest(session, self.policy, now)
            self.data_dir.mkdir(parents=True, exist_ok=True)
            path = self.data_dir / DIGEST_FILENAME
            path.write_text(text, encoding="utf-8")
            record_event(session, "digest_sent", {"path": str(path), "date": now.date().isoformat()})
            session.commit()
        log.info("Daily digest written to %s", path)
        await self.notifier.notify(f"Daily digest {now:%Y-%m-%d}", text)
        return text
