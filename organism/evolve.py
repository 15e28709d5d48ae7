"""Self-improvement proposals.

The organism reads its own source, asks the model for a few targeted changes
and stores them as ``pending`` proposals. A human approves or rejects them;
nothing here ever writes code.
"""
from __future__ import annotations

import difflib
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from organism.brain import Brain
from organism.db import SessionFactory, session_scope
from organism.events import record_event, record_event_now
from organism.jobs import JobResult, enqueue
from organism.models import Cycle, Event, Proposal
from organism.notify import LogNotifier, Notifier
from organism.opportunity import status_counts
from organism.policy import Policy, PolicySource
from organism.utils import strip_fences, utcnow

log = logging.getLogger(__name__)

EVOLVE_JOB = "evolve"
MAX_PROPOSALS = 3
MAX_FILE_CHARS = 8000
SOURCE_ROOT = Path(__file__).resolve().parent

EVOLVE_PROMPT = """\
You are the self-improvement engine of an autonomous economic agent called Organism.
Study the codebase and performance context below. Identify up to {max_proposals} concrete improvements.

PERFORMANCE CONTEXT:
{context}

SOURCE FILES:
{files}

RULES FOR PROPOSALS:
- Target one exact file and one exact code block.
- current_code must be the EXACT text that exists in the file.
- proposed_code must be a drop-in replacement for current_code.
- Do not remove zombie kill logic, budget guards or human approval gates.

Respond ONLY with valid JSON. No markdown, no explanation:
[
  {{
    "file_path": "scheduler.py",
    "title": "short name of the change",
    "rationale": "why this specific change improves survival",
    "current_code": "...",
    "proposed_code": "..."
  }}
]

If no meaningful improvements exist, return an empty array: []
"""


def read_source_files(root: Path = SOURCE_ROOT) -> list[tuple[str, str]]:
    files = []
    for path in sorted(root.glob("*.py")):
        try:
            files.append((path.name, path.read_text(encoding="utf-8")[:MAX_FILE_CHARS]))
        except OSError as exc:
            log.warning("Skipping unreadable source file %s: %s", path, exc)
    return files


def evolve_due(session: Session, policy: PolicySource, now: datetime | None = None) -> bool:
    """Due when no run was queued, completed or failed within ``evolve_interval_hours``."""
    last = session.execute(
        select(func.max(Event.created_at))
        .where(Event.type.in_(("evolve_queued", "evolve_complete", "evolve_error")))
    ).scalar()
    if last is None:
        return True
    interval = timedelta(hours=policy.get_float("evolve_interval_hours"))
    return (now or utcnow()) - last >= interval


def performance_context(session: Session, now: datetime | None = None) -> dict[str, Any]:
    week_ago = (now or utcnow()) - timedelta(days=7)
    cycles = dict(session.execute(
        select(Cycle.status, func.count(Cycle.id)).where(Cycle.started_at >= week_ago).group_by(Cycle.status)
    ).all())
    brain_errors = session.execute(
        select(func.count(Event.id)).where(Event.type == "brain_error", Event.created_at >= week_ago)
    ).scalar() or 0
    return {"cycle_health_7d": cycles, "brain_errors_7d": int(brain_errors),
            "pipeline": status_counts(session)}


def parse_proposals(text: str) -> list[dict[str, Any]] | None:
    """The proposals as a list, at most :data:`MAX_PROPOSALS`; ``None`` if unparseable."""
    try:
        parsed = json.loads(strip_fences(text))
    except (ValueError, TypeError):
        return None
    if not isinstance(parsed, list):
        return None
    return [p for p in parsed if isinstance(p, dict)][:MAX_PROPOSALS]


def make_diff(file: str, current: str, proposed: str) -> str:
    return "".join(difflib.unified_diff(
        current.splitlines(keepends=True), proposed.splitlines(keepends=True),
        fromfile=f"a/{file}", tofile=f"b/{file}",
    ))


def store_proposals(
    session: Session, proposals: list[dict[str, Any]], root: Path = SOURCE_ROOT,
) -> list[Proposal]:
    """Keep proposals whose ``current_code`` really exists in the named file (caller must commit)."""
    stored = []
    for p in proposals:
        file = str(p.get("file_path") or "")
        current = str(p.get("current_code") or "")
        proposed = str(p.get("proposed_code") or "")
        if not file or not current.strip() or not proposed:
            continue
        path = root / Path(file).name
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            log.info("Proposal targets unknown file %s, skipped", file)
            continue
        if current.strip() not in content:
            record_event(session, "evolve_hallucination", {"file": file, "snippet": current[:100]})
            log.info("Proposal for %s quotes code that is not in the file, skipped", file)
            continue
        proposal = Proposal(
            file=path.name,
            title=str(p.get("title") or p.get("expected_impact") or "")[:300],
            rationale=str(p.get("rationale") or ""),
            change=make_diff(path.name, current, proposed),
        )
        session.add(proposal)
        stored.append(proposal)
    session.flush()
    return stored


def resolve_proposal(session: Session, proposal_id: int, approved: bool) -> bool:
    """Approve or reject a pending proposal. Returns False if it was not pending."""
    result = session.execute(
        update(Proposal)
        .where(Proposal.id == proposal_id, Proposal.status == "pending")
        .values(status="approved" if approved else "rejected", resolved_at=utcnow())
    )
    if result.rowcount == 1:
        record_event(session, "proposal_resolved", {"proposal_id": proposal_id, "approved": approved})
    session.commit()
    return result.rowcount == 1


def proposal_summary(p: Proposal) -> dict[str, Any]:
    return {
        "id": p.id, "file": p.file, "title": p.title, "rationale": p.rationale,
        "change": p.change, "status": p.status, "created_at": p.created_at.isoformat(),
        "resolved_at": p.resolved_at.isoformat() if p.resolved_at else None,
    }


class Evolver:
    """Schedules self-improvement runs on the job queue and executes them for the workers.

    The heartbeat only calls :meth:`maybe_evolve`, which enqueues an ``evolve``
    job. The model call, which may sit in the cloud approval wait, happens in
    :meth:`handle_job` on a worker.
    """

    def __init__(
        self,
        brain: Brain,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
        source_root: Path = SOURCE_ROOT,
    ):
        self.brain = brain
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory
        self.notifier = notifier or LogNotifier()
        self.source_root = source_root

    def maybe_evolve(self, now: datetime | None = None) -> int | None:
        """Enqueue an ``evolve`` job if one is due; returns its id."""
        now = now or utcnow()
        with session_scope(self._session_factory) as session:
            if not evolve_due(session, self.policy, now):
                return None
            job_id = enqueue(session, EVOLVE_JOB, {"reason": "self-improvement analysis"})
            record_event(session, "evolve_queued", {"job_id": job_id})
            session.commit()
        log.info("Self-improvement analysis queued as job #%s", job_id)
        return job_id

    async def handle_job(self, job_id: int, payload: dict[str, Any]) -> JobResult:
        ids = await self.run()
        return JobResult(output={"proposal_ids": ids or []})

    async def run(self, now: datetime | None = None) -> list[int] | None:
        """Generate and store proposals; returns their ids. Failures are recorded, not raised."""
        with session_scope(self._session_factory) as session:
            context = performance_context(session, now)

        files = read_source_files(self.source_root)
        prompt = EVOLVE_PROMPT.format(
            max_proposals=MAX_PROPOSALS,
            context=json.dumps(context, indent=2),
            files="\n\n".join(f"--- {name} ---\n{code}" for name, code in files),
        )
        try:
            text = await self.brain.call(prompt, "self-improvement analysis", task="code")
        except Exception as exc:
            log.warning("Self-improvement analysis failed: %s", exc)
            record_event_now("evolve_error", {"error": str(exc)}, self._session_factory)
            return None

        proposals = parse_proposals(text)
        with session_scope(self._session_factory) as session:
            if proposals is None:
                record_event(session, "evolve_parse_failed", {"raw": text[:500]})
                proposals = []
            stored = store_proposals(session, proposals, self.source_root)
            ids = [p.id for p in stored]
            record_event(session, "evolve_complete", {"proposals_generated": len(ids)})
            session.commit()

        if ids:
            log.info("%d self-improvement proposal(s) ready for review", len(ids))
            await self.notifier.notify(
                "Self-improvement proposals",
                "\n".join(f"#{p.id} {p.file}: {p.title}" for p in stored),
            )
        return ids
