"""Validation/build controller.

Before anything is built for real, a ``pursue`` opportunity gets a cheap
validation (a preorder page) that stays live for ``validation_window_hours``.
A payment inside the window converts it and the real product is built; no
payment kills the opportunity. At most ``max_concurrent_validations``
opportunities are ``building`` at once, except that converted ones are always
built.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from organism.db import SessionFactory, session_scope
from organism.events import record_event
from organism.models import Opportunity, Validation
from organism.notify import LogNotifier, Notifier
from organism.opportunity import InvalidTransition, kill_zombies, transition, with_status
from organism.policy import Policy, PolicySource
from organism.utils import json_dump, utcnow

log = logging.getLogger(__name__)


class Builder(Protocol):
    async def launch_validation(self, opp: Opportunity) -> dict[str, Any] | None: ...

    async def build_final(self, opp: Opportunity) -> dict[str, Any] | None: ...


class NullBuilder:
    """Dry-run builder: returns placeholder artifacts and deploys nothing."""

    async def launch_validation(self, opp: Opportunity) -> dict[str, Any] | None:
        log.info("Dry run: would launch a preorder page for %r", opp.title)
        return {"channel": "preorder", "dry_run": True, "title": opp.title}

    async def build_final(self, opp: Opportunity) -> dict[str, Any] | None:
        log.info("Dry run: would build the product for %r", opp.title)
        return {"dry_run": True, "title": opp.title}


def record_payment(session: Session, opportunity_id: int, now: datetime | None = None) -> Validation | None:
    """Store a payment signal on the opportunity's live validation.

    The validation converts when its window closes. Returns ``None`` if there
    is no live validation to attach the payment to.
    """
    validation = session.execute(
        select(Validation)
        .where(Validation.opportunity_id == opportunity_id, Validation.status == "live")
        .order_by(Validation.id.desc())
        .limit(1)
    ).scalars().first()
    if validation is None:
        return None
    if validation.payment_received_at is None:
        validation.payment_received_at = now or utcnow()
    record_event(session, "payment_received", {
        "opportunity_id": opportunity_id, "validation_id": validation.id,
    })
    session.commit()
    log.info("Payment recorded for opportunity %s (validation %s)", opportunity_id, validation.id)
    return validation


def _has_converted(session: Session, opportunity_id: int) -> bool:
    return session.execute(
        select(Validation.id)
        .where(Validation.opportunity_id == opportunity_id, Validation.status == "converted")
        .limit(1)
    ).first() is not None


class ValidationController:
    def __init__(
        self,
        builder: Builder | None = None,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        notifier: Notifier | None = None,
    ):
        self.builder = builder or NullBuilder()
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory
        self.notifier = notifier or LogNotifier()

    async def run_pass(self, now: datetime | None = None) -> dict[str, list[int]]:
        """One controller pass; returns the opportunity ids touched by each step."""
        now = now or utcnow()
        summary: dict[str, list[int]] = {}
        summary["killed"], summary["converted"], summary["expired"] = self.housekeeping(now)
        summary["shipped"], summary["build_failed"] = await self.build_converted()
        summary["launched"], summary["launch_failed"] = await self.launch_validations(now)
        return summary

    # -- step 1 ----------------------------------------------------------------

    def housekeeping(self, now: datetime) -> tuple[list[int], list[int], list[int]]:
        """Kill zombies, then resolve live validations whose window has closed."""
        converted: list[int] = []
        expired: list[int] = []
        with session_scope(self._session_factory) as session:
            killed = kill_zombies(session, self.policy, now)
            due = session.execute(
                select(Validation)
                .where(Validation.status == "live", Validation.window_ends_at <= now)
                .order_by(Validation.id)
            ).scalars().all()
            for validation in due:
                validation.resolved_at = now
                if validation.payment_received_at is not None:
                    validation.status = "converted"
                    record_event(session, "preorder_converted", {
                        "opportunity_id": validation.opportunity_id, "validation_id": validation.id,
                    })
                    converted.append(validation.opportunity_id)
                    continue
                validation.status = "expired"
                try:
                    transition(session, validation.opportunity_id, "killed",
                               {"reason": "validation_expired", "validation_id": validation.id},
                               expected="building")
                except InvalidTransition as exc:
                    log.info("Expired validation %s: %s", validation.id, exc)
                record_event(session, "preorder_expired", {
                    "opportunity_id": validation.opportunity_id, "validation_id": validation.id,
                })
                expired.append(validation.opportunity_id)
            session.commit()
        for opportunity_id in expired:
            log.info("Preorder for opportunity %s expired without payment", opportunity_id)
        return killed, converted, expired

    # -- step 2 ----------------------------------------------------------------

    async def build_converted(self) -> tuple[list[int], list[int]]:
        """Build every converted opportunity still in ``building``, cap or no cap."""
        with session_scope(self._session_factory) as session:
            ready = [
                opp for opp, _, _ in with_status(session, ["building"])
                if _has_converted(session, opp.id)
            ]
        if not ready:
            return [], []
        results = await asyncio.gather(*(self._build_one(opp) for opp in ready))
        shipped = [opp.id for opp, artifact in zip(ready, results) if artifact]
        failed = [opp.id for opp, artifact in zip(ready, results) if not artifact]

        with session_scope(self._session_factory) as session:
            for opp, artifact in zip(ready, results):
                validation = session.execute(
                    select(Validation)
                    .where(Validation.opportunity_id == opp.id, Validation.status == "converted")
                    .order_by(Validation.id.desc())
                    .limit(1)
                ).scalars().first()
                try:
                    if artifact:
                        transition(session, opp.id, "shipped", {"artifact": artifact}, expected="building")
                        if validation is not None:
                            validation.status = "built"
                            validation.artifact_json = json_dump(artifact)
                    else:
                        transition(session, opp.id, "error", {"reason": "build_failed"}, expected="building")
                        if validation is not None:
                            validation.status = "build_failed"
                        record_event(session, "build_failed", {"opportunity_id": opp.id})
                except InvalidTransition as exc:
                    log.warning("Build result for opportunity %s dropped: %s", opp.id, exc)
            session.commit()

        for opp_id in shipped:
            await self.notifier.notify("Product shipped", f"Opportunity #{opp_id} was built and shipped.")
        return shipped, failed

    async def _build_one(self, opp: Opportunity) -> dict[str, Any] | None:
        try:
            return await self.builder.build_final(opp)
        except Exception:
            log.exception("Final build failed for opportunity %s", opp.id)
            return None

    # -- step 3 ----------------------------------------------------------------

    def free_slots(self, session: Session) -> int:
        cap = self.policy.get_int("max_concurrent_validations")
        return max(0, cap - len(with_status(session, ["building"])))

    async def launch_validations(self, now: datetime) -> tuple[list[int], list[int]]:
        """Move the best ``pursue`` opportunities into ``building`` and launch them."""
        started: list[Opportunity] = []
        with session_scope(self._session_factory) as session:
            slots = self.free_slots(session)
            if slots == 0:
                log.info("Validation capacity full, nothing launched")
                return [], []
            candidates = with_status(
                session, ["pursue"],
                order_by=(Opportunity.viability_score.desc(), Opportunity.id),
            )
            for opp, _, _ in candidates:
                if len(started) >= slots:
                    break
                if _has_converted(session, opp.id):
                    continue
                try:
                    transition(session, opp.id, "building", {"reason": "validation_launch"}, expected="pursue")
                except InvalidTransition:
                    continue
                started.append(opp)
            session.commit()
        if not started:
            return [], []

        results = await asyncio.gather(*(self._launch_one(opp) for opp in started))
        window = timedelta(hours=self.policy.get_float("validation_window_hours"))
        launched: list[int] = []
        failed: list[int] = []
        with session_scope(self._session_factory) as session:
            for opp, (artifact, error) in zip(started, results):
                if artifact:
                    session.add(Validation(
                        opportunity_id=opp.id, channel=str(artifact.get("channel", "preorder")),
                        status="live", artifact_json=json_dump(artifact),
                        window_ends_at=now + window,
                    ))
                    record_event(session, "validation_launched", {"opportunity_id": opp.id})
                    launched.append(opp.id)
                    continue
                try:
                    transition(session, opp.id, "error",
                               {"reason": "validation_launch_failed", "error": error}, expected="building")
                except InvalidTransition as exc:
                    log.warning("Launch failure for opportunity %s not recorded: %s", opp.id, exc)
                record_event(session, "validation_launch_failed", {"opportunity_id": opp.id, "error": error})
                failed.append(opp.id)
            session.commit()
        log.info("Validations launched: %s, failed: %s", launched, failed)
        return launched, failed

    async def _launch_one(self, opp: Opportunity) -> tuple[dict[str, Any] | None, str]:
        try:
            artifact = await self.builder.launch_validation(opp)
        except Exception as exc:
            log.exception("Validation launch failed for opportunity %s", opp.id)
            return None, str(exc)
        if not artifact:
            return None, "builder returned no artifact"
        return artifact, ""
