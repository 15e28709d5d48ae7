"""LLM job queue and worker pool.

``enqueue`` returns as soon as a ``pending`` row exists. ``WorkerPool.poll``
claims up to ``concurrency`` jobs and processes them concurrently. A claim is
a compare-and-swap on the row (``pending -> locked``), preceded by
``FOR UPDATE SKIP LOCKED`` on backends that support it, so two pollers can
never both own a job. Processing always ends in ``done`` or ``failed``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from organism.brain import Brain
from organism.db import SessionFactory, session_scope
from organism.events import record_event
from organism.models import LLMJob
from organism.policy import Policy, PolicySource
from organism.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

JOB_STATUSES = ("pending", "locked", "running", "done", "failed")
TERMINAL_JOB_STATUSES = frozenset({"done", "failed"})


@dataclass
class JobResult:
    output: dict[str, Any] = field(default_factory=dict)
    model: str = ""
    cost_usd: float = 0.0


JobHandler = Callable[[int, dict[str, Any]], Awaitable[JobResult]]


# ---------------------------------------------------------------------------
# Queue primitives
# ---------------------------------------------------------------------------


def enqueue(session: Session, job_type: str, payload: dict[str, Any]) -> int:
    """Insert a pending job and return its id (caller must commit)."""
    job = LLMJob(job_type=job_type, input_json=json_dump(payload), status="pending")
    session.add(job)
    session.flush()
    log.info("Queued %s job #%s", job_type, job.id)
    return job.id


def try_claim(session: Session, job_id: int, now: datetime | None = None) -> bool:
    """Conditionally move one job ``pending -> locked``; False if someone else won."""
    result = session.execute(
        update(LLMJob)
        .where(LLMJob.id == job_id, LLMJob.status == "pending")
        .values(status="locked", locked_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_jobs(session: Session, limit: int, now: datetime | None = None) -> list[int]:
    """Claim up to *limit* pending jobs, oldest first. Commits the claim."""
    if limit <= 0:
        return []
    candidates = session.execute(
        select(LLMJob.id)
        .where(LLMJob.status == "pending")
        .order_by(LLMJob.created_at, LLMJob.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()
    claimed = [job_id for job_id in candidates if try_claim(session, job_id, now)]
    session.commit()
    return claimed


def requeue_job(session: Session, job_id: int) -> int | None:
    """Copy a job's input into a fresh pending job (operator action for stuck/failed jobs)."""
    job = session.get(LLMJob, job_id)
    if job is None:
        return None
    new_id = enqueue(session, job.job_type, json_parse(job.input_json))
    record_event(session, "job_requeued", {"job_id": job_id, "new_job_id": new_id})
    session.commit()
    return new_id


def job_summary(job: LLMJob) -> dict[str, Any]:
    return {
        "id": job.id, "job_type": job.job_type, "status": job.status,
        "model": job.model, "cost_usd": job.cost_usd, "error": job.error,
        "input": json_parse(job.input_json), "output": json_parse(job.output_json, None),
        "created_at": job.created_at.isoformat(),
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def list_jobs(session: Session, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    query = select(LLMJob).order_by(LLMJob.id.desc()).limit(limit)
    if status:
        query = query.where(LLMJob.status == status)
    return [job_summary(j) for j in session.execute(query).scalars().all()]


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


class WorkerPool:
    def __init__(
        self,
        brain: Brain,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        concurrency: int = 2,
    ):
        self.brain = brain
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory
        self.concurrency = concurrency
        self.handlers: dict[str, JobHandler] = {}
        from organism.planner import make_plan_handler
        self.register("plan", make_plan_handler(brain, self.policy, session_factory))

    def register(self, job_type: str, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    async def poll(self) -> list[int]:
        """Claim up to ``concurrency`` jobs and process them; returns the claimed ids."""
        with session_scope(self._session_factory) as session:
            job_ids = claim_jobs(session, self.concurrency)
        if job_ids:
            log.info("Claimed jobs %s", job_ids)
            await asyncio.gather(*(self.process_job(job_id) for job_id in job_ids))
        return job_ids

    async def process_job(self, job_id: int) -> None:
        try:
            with session_scope(self._session_factory) as session:
                job = session.get(LLMJob, job_id)
                if job is None:
                    log.warning("Job %s vanished before processing", job_id)
                    return
                job.status = "running"
                job.started_at = utcnow()
                session.commit()
                job_type, payload = job.job_type, json_parse(job.input_json)

            log.info("Worker picked up [%s] job %s", job_type, job_id)
            handler = self.handlers.get(job_type, self._handle_generic)
            result = await handler(job_id, payload)

            with session_scope(self._session_factory) as session:
                session.execute(
                    update(LLMJob)
                    .where(LLMJob.id == job_id, LLMJob.status == "running")
                    .values(
                        status="done", completed_at=utcnow(),
                        output_json=json_dump(result.output),
                        model=result.model, cost_usd=result.cost_usd,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            log.info("Worker finished [%s] job %s", job_type, job_id)
        except Exception as exc:
            log.exception("Worker failed on job %s", job_id)
            self._fail(job_id, exc)

    def _fail(self, job_id: int, exc: Exception) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(
                    update(LLMJob)
                    .where(LLMJob.id == job_id, LLMJob.status.in_(("locked", "running")))
                    .values(
                        status="failed", completed_at=utcnow(), error=str(exc)[:2000],
                        output_json=json_dump({"error": str(exc)}),
                    )
                    .execution_options(synchronize_session=False)
                )
                record_event(session, "job_failed", {"job_id": job_id, "error": str(exc)[:500]})
                session.commit()
        except Exception as store_exc:
            log.error("Could not mark job %s failed: %s", job_id, store_exc)

    async def _handle_generic(self, job_id: int, payload: dict[str, Any]) -> JobResult:
        response = await self.brain.complete(
            str(payload.get("prompt", "")), f"Job {job_id}", task=payload.get("task", "chat"),
        )
        return JobResult(
            output={"response": response.text}, model=response.model, cost_usd=response.cost_usd,
        )
