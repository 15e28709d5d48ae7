"""Planning: turn a selected opportunity into a queued ``plan`` job, and resolve it.

The model is asked for a JSON verdict with a 0-100 ``score``. Malformed output
is tolerated: the score is pulled out with a regex and a ``plan_parse_failed``
event makes the failure visible.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from organism.brain import Brain
from organism.db import SessionFactory, session_scope
from organism.events import record_event
from organism.jobs import JobHandler, JobResult, enqueue
from organism.models import Opportunity
from organism.opportunity import InvalidTransition, transition
from organism.policy import PolicySource
from organism.utils import strip_fences

log = logging.getLogger(__name__)

_SCORE_RE = re.compile(r'"score"\s*:\s*(\d+)')
_PLAN_MAX_CHARS = 4000

PLAN_PROMPT = """\
You are evaluating a business opportunity for an autonomous micro-SaaS builder.
Instead of building a full paid product right away, we build a free tool, \
calculator or lead magnet to capture high-intent emails.
Be honest. Overoptimism kills the organism. But don't be nihilistic: some ideas genuinely work.

OPPORTUNITY:
Title: {title}
Source: {source}
{context}
YOUR TASK: Score this opportunity's potential to capture high-intent B2B emails from 0 to 100.

Scoring guide:
- 0-20:  Vague, crowded, or no clear buyer with a specific problem.
- 21-40: Real pain but hard to build a simple free tool for.
- 41-60: Clear pain, identifiable buyer, plausible free tool can be built in a day.
- 61-80: Strong pain, highly specific niche, perfect for a highly-searched free tool.
- 81-100: Exceptional. Rare. Don't give this unless truly remarkable.

RESPOND ONLY with this JSON. No markdown. No explanation before or after:
{{
  "pain_summary": "one sentence: the specific recurring pain",
  "who_pays": "job title or role of the person who has this pain",
  "lead_magnet_idea": "one sentence: the free tool we will build to capture their email",
  "risks": "the single biggest reason this fails to get emails",
  "score": 45
}}

The score must be an integer between 0 and 100. Do not omit it.
"""


@dataclass
class PlanOutcome:
    score: int
    parsed: dict[str, Any] | None
    parse_failed: bool


def _clamp_score(value: Any) -> int:
    return max(0, min(100, int(float(value))))


def build_plan_prompt(opp: Opportunity) -> str:
    context = f"Context:\n{opp.raw_text[:1500]}\n" if opp.raw_text else ""
    return PLAN_PROMPT.format(title=opp.title, source=opp.source, context=context)


def parse_plan_output(text: str) -> PlanOutcome:
    """Strict JSON first; otherwise fall back to the first ``"score": N`` in the text."""
    try:
        parsed = json.loads(strip_fences(text))
        if not isinstance(parsed, dict):
            raise ValueError("plan is not a JSON object")
        return PlanOutcome(score=_clamp_score(parsed["score"]), parsed=parsed, parse_failed=False)
    except (ValueError, TypeError, KeyError):
        match = _SCORE_RE.search(text or "")
        score = _clamp_score(match.group(1)) if match else 0
        return PlanOutcome(score=score, parsed=None, parse_failed=True)


def queue_plan(session: Session, opp: Opportunity, policy: PolicySource) -> int | None:
    """Enqueue a plan job for a ``reviewing`` opportunity and mark it queued.

    On failure the opportunity moves to ``error`` and ``None`` is returned.
    """
    use_cloud = (opp.viability_score or 0) >= policy.get_float("cloud_plan_min_viability")
    try:
        job_id = enqueue(session, "plan", {
            "prompt": build_plan_prompt(opp),
            "opportunity_id": opp.id,
            "title": opp.title,
            "use_cloud": use_cloud,
        })
        transition(session, opp.id, "queued_for_planning", {"job_id": job_id}, expected="reviewing")
        session.commit()
    except Exception as exc:
        session.rollback()
        log.warning("Error queuing plan job for opportunity %s: %s", opp.id, exc)
        record_event(session, "brain_error", {"error": str(exc), "opportunity_id": opp.id})
        try:
            transition(session, opp.id, "error", {"error": str(exc)}, expected="reviewing")
        except InvalidTransition as moved:
            log.info("Opportunity %s left reviewing before the error was recorded: %s", opp.id, moved)
        session.commit()
        return None
    log.info("Plan job #%s queued for opportunity %s (cloud=%s)", job_id, opp.id, use_cloud)
    return job_id


def make_plan_handler(
    brain: Brain, policy: PolicySource, session_factory: SessionFactory | None = None,
) -> JobHandler:
    async def handle_plan(job_id: int, payload: dict[str, Any]) -> JobResult:
        opportunity_id = int(payload["opportunity_id"])
        use_cloud = bool(payload.get("use_cloud"))
        title = str(payload.get("title", ""))
        response = await brain.complete(
            str(payload.get("prompt", "")),
            f"planning for opportunity: {title[:60]}",
            task="planning" if use_cloud else "scoring",
            force_local=not use_cloud,
        )
        outcome = parse_plan_output(response.text)
        threshold = policy.get_float("pursue_threshold")
        decision = "pursue" if outcome.score >= threshold else "discarded"

        with session_scope(session_factory) as session:
            if outcome.parse_failed:
                log.warning("Plan output for opportunity %s was not valid JSON; fallback score %s",
                            opportunity_id, outcome.score)
                record_event(session, "plan_parse_failed", {
                    "job_id": job_id, "opportunity_id": opportunity_id,
                    "fallback_score": outcome.score, "raw": response.text[:500],
                })
            opp = session.get(Opportunity, opportunity_id)
            if opp is not None:
                opp.plan = response.text[:_PLAN_MAX_CHARS]
            transition(session, opportunity_id, decision,
                       {"score": outcome.score, "job_id": job_id}, expected="queued_for_planning")
            record_event(session, "decision", {
                "opportunity_id": opportunity_id, "action": decision, "score": outcome.score,
            })
            session.commit()
        log.info("Plan decision %s (score %s) for opportunity %s", decision, outcome.score, opportunity_id)
        return JobResult(
            output={
                "response": response.text, "opportunity_id": opportunity_id,
                "score": outcome.score, "parsed": outcome.parsed, "decision": decision,
            },
            model=response.model,
            cost_usd=response.cost_usd,
        )

    return handle_plan
