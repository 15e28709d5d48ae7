"""The heartbeat: one discovery cycle per tick.

Phases run in a fixed order and are never retried within a tick:
digest, reflection, self-improvement, budget check, sensing, selection,
planning, self-check. A tick that is still running when the next one is due
makes the next one a no-op.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Any, Sequence

import httpx
from sqlalchemy import select, text, update

from organism.budget import budget_status
from organism.db import SessionFactory, session_scope
from organism.digest import DigestWriter
from organism.events import record_event, record_event_now
from organism.evolve import Evolver
from organism.models import Cycle
from organism.opportunity import select_top
from organism.planner import queue_plan
from organism.policy import Policy, PolicySource
from organism.reflection import Reflector
from organism.sensors import Sensor
from organism.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

_NETWORK_TIMEOUT = 5.0


class CycleScheduler:
    def __init__(
        self,
        *,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        sensors: Sequence[Sensor] = (),
        digest: DigestWriter | None = None,
        reflector: Reflector | None = None,
        evolver: Evolver | None = None,
        data_dir: Path | None = None,
        healthcheck_url: str = "",
    ):
        self.policy = policy or Policy(session_factory)
        self._session_factory = session_factory
        self.sensors = list(sensors)
        self.digest = digest
        self.reflector = reflector
        self.evolver = evolver
        self.data_dir = Path(data_dir) if data_dir else Path(tempfile.gettempdir())
        self.healthcheck_url = healthcheck_url
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> int | None:
        """Run one cycle; returns its id, or ``None`` if the previous one is still running."""
        if self._running:
            log.warning("Previous cycle still running, skipping this tick")
            return None
        self._running = True
        try:
            return await self._run_cycle()
        finally:
            self._running = False

    async def _run_cycle(self) -> int:
        with session_scope(self._session_factory) as session:
            cycle = Cycle(status="running")
            session.add(cycle)
            session.commit()
            cycle_id = cycle.id
        log.info("Cycle %s started", cycle_id)

        diagnostics: dict[str, Any] = {}
        try:
            if self.digest is not None:
                await self.digest.maybe_send()
            if self.reflector is not None:
                await self.reflector.maybe_reflect()
            if self.evolver is not None:
                diagnostics["evolve_job"] = self.evolver.maybe_evolve()

            with session_scope(self._session_factory) as session:
                status = budget_status(session, self.policy)
                record_event(session, "budget_status", {"cycle_id": cycle_id, "status": status})
                session.commit()
            diagnostics["budget_status"] = status
            if status == "exhausted":
                log.warning("Daily budget exhausted, cycle %s stops before sensing", cycle_id)
                self._close(cycle_id, "budget_exhausted", "daily budget exhausted", diagnostics)
                return cycle_id

            diagnostics["sensor_failures"] = await self.sense(cycle_id)

            with session_scope(self._session_factory) as session:
                opp = select_top(session, self.policy)
                if opp is not None:
                    diagnostics["selected"] = opp.id
                    diagnostics["plan_job"] = queue_plan(session, opp, self.policy)
                else:
                    log.info("No candidate above the viability floor this cycle")

            diagnostics["self_check"] = await self.self_check(cycle_id)
            self._close(cycle_id, "success", None, diagnostics)
        except Exception as exc:
            log.exception("Cycle %s failed", cycle_id)
            self._close(cycle_id, "failed", str(exc)[:2000], diagnostics)
        return cycle_id

    def _close(self, cycle_id: int, status: str, notes: str | None, diagnostics: dict[str, Any]) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(
                    update(Cycle)
                    .where(Cycle.id == cycle_id)
                    .values(status=status, notes=notes, ended_at=utcnow(),
                            diagnostics_json=json_dump(diagnostics))
                )
                session.commit()
        except Exception as exc:
            log.error("Could not close cycle %s as %s: %s", cycle_id, status, exc)
            return
        log.info("Cycle %s finished: %s", cycle_id, status)

    # -- sensing ---------------------------------------------------------------

    async def sense(self, cycle_id: int | None = None) -> list[str]:
        """Run all sensors concurrently; returns the names of the ones that failed."""
        results = await asyncio.gather(
            *(self._run_sensor(sensor) for sensor in self.sensors), return_exceptions=True,
        )
        failed = []
        for sensor, result in zip(self.sensors, results):
            if isinstance(result, BaseException):
                log.warning("Sensor %s failed: %s", sensor.name, result)
                record_event_now("sensor_error", {
                    "cycle_id": cycle_id, "sensor": sensor.name, "error": str(result),
                }, self._session_factory)
                failed.append(sensor.name)
        return failed

    async def _run_sensor(self, sensor: Sensor) -> None:
        with session_scope(self._session_factory) as session:
            await sensor.sense(session)
            session.commit()

    # -- self-check ------------------------------------------------------------

    async def self_check(self, cycle_id: int | None = None) -> dict[str, Any]:
        checks = {
            "store": self._check_store(),
            "disk": self._check_disk(),
            "network": await self._check_network(),
        }
        result: dict[str, Any] = {name: ok for name, (ok, _) in checks.items()}
        errors = {name: err for name, (ok, err) in checks.items() if not ok}
        if errors:
            result["errors"] = errors
            log.warning("Self-check problems: %s", errors)
        record_event_now("self_check", {"cycle_id": cycle_id, **result}, self._session_factory)
        return result

    def _check_store(self) -> tuple[bool, str]:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(text("SELECT 1"))
        except Exception as exc:
            return False, str(exc)
        return True, ""

    def _check_disk(self) -> tuple[bool, str]:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=self.data_dir, prefix=".selfcheck") as f:
                f.write(b"ok")
                f.flush()
        except OSError as exc:
            return False, str(exc)
        return True, ""

    async def _check_network(self) -> tuple[bool, str]:
        if not self.healthcheck_url:
            return True, "skipped"
        try:
            async with httpx.AsyncClient(timeout=_NETWORK_TIMEOUT) as client:
                resp = await client.get(self.healthcheck_url)
        except httpx.HTTPError as exc:
            return False, str(exc)
        if resp.status_code >= 500:
            return False, f"HTTP {resp.status_code}"
        return True, ""


def cycle_summary(cycle: Cycle) -> dict[str, Any]:
    return {
        "id": cycle.id, "status": cycle.status, "notes": cycle.notes,
        "started_at": cycle.started_at.isoformat(),
        "ended_at": cycle.ended_at.isoformat() if cycle.ended_at else None,
        "diagnostics": json_parse(cycle.diagnostics_json),
    }


def recent_cycles(session, limit: int = 20) -> list[dict[str, Any]]:
    return [
        cycle_summary(c) for c in
        session.execute(select(Cycle).order_by(Cycle.id.desc()).limit(limit)).scalars().all()
    ]
