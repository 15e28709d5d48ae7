"""Adaptive reflection.

The organism looks back more often when it is failing: the interval since the
last reflection depends on that reflection's assessment. A reflection asks the
local model for an assessment plus policy updates; updates are clamped to
:data:`~organism.policy.TUNABLE_BOUNDS` and operator ratings are folded into
the source weights.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from organism.brain import Brain
from organism.budget import cloud_spend_summary
from organism.db import SessionFactory, session_scope
from organism.events import record_event, record_event_now
from organism.models import Cycle, Event, Opportunity, Reflection
from organism.opportunity import status_counts, with_status
from organism.policy import Policy, PolicySource, clamp_policy_value
from organism.utils import json_dump, json_parse, strip_fences, utcnow

log = logging.getLogger(__name__)

# Days between reflections, by the last assessment.
REFLECTION_INTERVALS: dict[str, float] = {
    "dying": 0.5,
    "struggling": 1,
    "surviving": 3,
    "thriving": 7,
    "unknown": 1,
}
ASSESSMENTS = frozenset(REFLECTION_INTERVALS)

WEIGHT_BOUNDS = (0.1, 2.0)
RATING_STEP = 0.1
_PURSUED = {"pursue", "building", "shipped"}

REFLECT_PROMPT = """\
You are the reflection engine of an autonomous economic organism.
Analyze performance since the last reflection and update policies to improve survival.

CONTEXT:
{context}

DECISION RULES:
- No shipped products after many cycles means "struggling" or "dying".
- If almost nothing gets pursued, lower min_viability_score.
- If brain_errors > 3, something is wrong with prompts; say so in top_concern.
- A source with nothing pursued and bad operator ratings deserves a weight below 0.5.

Respond ONLY in valid JSON, no markdown, no explanation:
{{
  "summary": "2-3 sentences on what happened and why",
  "assessment": "thriving|surviving|struggling|dying",
  "policy_updates": {{
    "min_viability_score": <int 0-90>,
    "pursue_threshold": <int 10-90>,
    "max_concurrent_validations": <int 1-10>,
    "zombie_kill_days": <int 1-30>,
    "validation_window_hours": <int 12-168>
  }},
  "source_weights": {{"<source tag>": <float 0.1-2.0>}},
  "top_concern": "single most urgent problem"
}}
"""


def last_reflection(session: Session) -> Reflection | None:
    return session.execute(
        select(Reflection).order_by(Reflection.id.desc()).limit(1)
    ).scalars().first()


def reflection_interval(assessment: str | None) -> timedelta:
    return timedelta(days=REFLECTION_INTERVALS.get(assessment or "unknown", 1))


def should_reflect(session: Session, now: datetime | None = None) -> bool:
    last = last_reflection(session)
    if last is None:
        return True
    return (now or utcnow()) - last.created_at >= reflection_interval(last.assessment)


def gather_context(session: Session, policy: PolicySource, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    last = last_reflection(session)
    since = last.created_at if last else now - timedelta(days=1)

    sources: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"total": 0, "pursued": 0, "shipped": 0, "viability_sum": 0.0, "good": 0, "bad": 0}
    )
    for opp, status, _ in with_status(session):
        if opp.created_at < since:
            continue
        stats = sources[opp.source or "unknown"]
        stats["total"] += 1
        stats["pursued"] += int(status in _PURSUED)
        stats["shipped"] += int(status == "shipped")
        stats["viability_sum"] += opp.viability_score or 0
        if opp.rating in ("good", "bad"):
            stats[opp.rating] += 1
    source_performance = {
        name: {**{k: v for k, v in s.items() if k != "viability_sum"},
               "avg_viability": round(s["viability_sum"] / s["total"]) if s["total"] else 0}
        for name, s in sources.items()
    }

    cycle_health = dict(session.execute(
        select(Cycle.status, func.count(Cycle.id))
        .where(Cycle.started_at >= since)
        .group_by(Cycle.status)
    ).all())
    brain_errors = session.execute(
        select(func.count(Event.id)).where(Event.type == "brain_error", Event.created_at >= since)
    ).scalar() or 0
    past = session.execute(
        select(Reflection).order_by(Reflection.id.desc()).limit(5)
    ).scalars().all()

    return {
        "period_start": since.isoformat(),
        "outcomes": status_counts(session),
        "source_performance": source_performance,
        "cycle_health": cycle_health,
        "brain_errors": int(brain_errors),
        "cloud_spend": cloud_spend_summary(session, policy, now),
        "current_policies": policy.all(),
        "past_assessments": [
            {"assessment": r.assessment, "summary": r.summary, "created_at": r.created_at.isoformat()}
            for r in past
        ],
    }


def parse_reflection(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(strip_fences(text))
    except (ValueError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def apply_policy_updates(policy: PolicySource, updates: Any) -> dict[str, float]:
    """Write the tunable keys in *updates*, clamped to their bounds. Others are ignored."""
    applied: dict[str, float] = {}
    if not isinstance(updates, dict):
        return applied
    for key, value in updates.items():
        clamped = clamp_policy_value(key, value)
        if clamped is None:
            log.info("Reflection proposed non-tunable policy %s=%r, ignored", key, value)
            continue
        if float(clamped).is_integer():
            clamped = int(clamped)
        policy.set(key, clamped)
        applied[key] = clamped
        log.info("Policy %s = %s", key, clamped)
    return applied


def _clamp_weight(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    lo, hi = WEIGHT_BOUNDS
    return round(max(lo, min(hi, number)), 3)


def rating_counts(session: Session, since: datetime | None) -> dict[str, tuple[int, int]]:
    """``{source: (good, bad)}`` for ratings given since *since*."""
    query = select(Opportunity.source, Opportunity.rating).where(Opportunity.rating.is_not(None))
    if since is not None:
        query = query.where(Opportunity.rated_at >= since)
    counts: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for source, rating in session.execute(query).all():
        counts[(source or "unknown").lower()][0 if rating == "good" else 1] += 1
    return {k: (v[0], v[1]) for k, v in counts.items()}


def adjust_source_weights(
    weights: dict[str, Any], proposed: Any, ratings: dict[str, tuple[int, int]],
) -> dict[str, float]:
    """Model-proposed weights first, then each good rating +0.1 and each bad one -0.1."""
    result: dict[str, float] = {}
    for key, value in weights.items():
        clamped = _clamp_weight(value)
        if clamped is not None:
            result[key] = clamped
    if isinstance(proposed, dict):
        for key, value in proposed.items():
            clamped = _clamp_weight(value)
            if key and clamped is not None:
                result[str(key).lower()] = clamped
    for source, (good, bad) in ratings.items():
        current = result.get(source, 1.0)
        result[source] = _clamp_weight(current + RATING_STEP * (good - bad))  # type: ignore[assignment]
    return result


class Reflector:
    def __init__(
        self,
        brain: Brain,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
    ):
        self.brain = brain
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory

    async def maybe_reflect(self, now: datetime | None = None) -> Reflection | None:
        """Reflect if due. Failures are logged and recorded, never raised."""
        now = now or utcnow()
        with session_scope(self._session_factory) as session:
            if not should_reflect(session, now):
                return None
            last = last_reflection(session)
            since = last.created_at if last else None
            context = gather_context(session, self.policy, now)
            ratings = rating_counts(session, since)

        log.info("Reflection due (last assessment: %s)", last.assessment if last else "none")
        try:
            response = await self.brain.call_local(
                REFLECT_PROMPT.format(context=json.dumps(context, indent=2, default=str)), "reflect",
            )
        except Exception as exc:
            log.warning("Reflection failed: %s", exc)
            record_event_now("reflection_error", {"error": str(exc)}, self._session_factory)
            return None

        result = parse_reflection(response.text)
        if result is None:
            log.warning("Reflection output was not valid JSON, skipping policy updates")
            record_event_now("reflection_parse_failed", {"raw": response.text[:1000]}, self._session_factory)
            return None

        assessment = str(result.get("assessment", "unknown")).lower()
        if assessment not in ASSESSMENTS:
            assessment = "unknown"
        applied = apply_policy_updates(self.policy, result.get("policy_updates"))
        weights = adjust_source_weights(
            self.policy.get_dict("source_weights"), result.get("source_weights"), ratings,
        )
        self.policy.set("source_weights", weights)

        with session_scope(self._session_factory) as session:
            reflection = Reflection(
                assessment=assessment,
                summary=str(result.get("summary", ""))[:2000],
                result_json=json_dump({**result, "applied": applied, "source_weights": weights}),
            )
            session.add(reflection)
            record_event(session, "reflection_complete", {
                "assessment": assessment,
                "top_concern": result.get("top_concern"),
                "policies_updated": len(applied),
                "next_reflection_hours": reflection_interval(assessment).total_seconds() / 3600,
            })
            session.commit()
        log.info("Reflection complete: %s. %s", assessment.upper(), reflection.summary)
        return reflection


def reflection_summary(reflection: Reflection) -> dict[str, Any]:
    return {
        "id": reflection.id, "assessment": reflection.assessment, "summary": reflection.summary,
        "result": json_parse(reflection.result_json), "created_at": reflection.created_at.isoformat(),
    }
