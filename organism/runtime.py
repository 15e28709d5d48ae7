"""Process entry point: three independent polling loops in one asyncio process.

- heartbeat: :meth:`CycleScheduler.tick` every ``heartbeat_interval_seconds``
- workers: :meth:`WorkerPool.poll` every ``job_poll_interval_seconds``
- validation: :meth:`ValidationController.run_pass` every ``validation_poll_interval_seconds``

Each loop is non-reentrant and survives any exception its body raises.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Awaitable, Callable, Sequence

from organism.brain import Brain
from organism.config import Settings, get_settings
from organism.db import SessionFactory, init_db
from organism.digest import DigestWriter
from organism.events import record_event_now
from organism.evolve import EVOLVE_JOB, Evolver
from organism.jobs import WorkerPool
from organism.notify import make_notifier
from organism.policy import Policy
from organism.reflection import Reflector
from organism.scheduler import CycleScheduler
from organism.sensors import Sensor
from organism.validation import Builder, ValidationController

log = logging.getLogger(__name__)

USAGE = """\
Usage: organism [--once] [--help]

Runs the heartbeat, LLM worker and validation loops until interrupted.

  --once   Run one heartbeat, one worker poll and one validation pass, then exit
  --help   Show this help message

Environment variables:
  ORGANISM_HOME            Working directory for data/ (default: current directory)
  ORGANISM_DATABASE_URL    SQLAlchemy URL (default: sqlite in data/organism.db)
  ORGANISM_CONFIG          Optional YAML file overriding settings
  ORGANISM_CLOUD_PROVIDER  openai (default) or anthropic
  OPENAI_API_KEY           Enables the OpenAI cloud backend
  ANTHROPIC_API_KEY        Enables the Anthropic cloud backend
  OLLAMA_URL               Local backend (default: http://localhost:11434)
  ORGANISM_NOTIFY_WEBHOOK  Where operator notifications are POSTed
"""


class PeriodicLoop:
    """Calls *fn* every *interval* seconds. A call still in flight makes the next one a no-op."""

    def __init__(
        self, name: str, interval: float, fn: Callable[[], Awaitable[Any]],
        session_factory: SessionFactory | None = None,
    ):
        self.name = name
        self.interval = interval
        self._fn = fn
        self._session_factory = session_factory
        self._busy = False
        self._tasks: set[asyncio.Task] = set()

    async def run_once(self) -> bool:
        """Returns False if the previous run was still busy."""
        if self._busy:
            log.info("%s loop still busy, skipping", self.name)
            return False
        self._busy = True
        try:
            await self._fn()
        except Exception as exc:
            log.exception("%s loop iteration failed", self.name)
            record_event_now("loop_error", {"loop": self.name, "error": str(exc)}, self._session_factory)
        finally:
            self._busy = False
        return True

    async def run_forever(self, stop: asyncio.Event) -> None:
        log.info("%s loop started (every %.0fs)", self.name, self.interval)
        while not stop.is_set():
            task = asyncio.create_task(self.run_once())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        log.info("%s loop stopped", self.name)


class Organism:
    """Wires the components together from :class:`Settings`."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sensors: Sequence[Sensor] = (),
        builder: Builder | None = None,
        session_factory: SessionFactory | None = None,
        brain: Brain | None = None,
    ):
        self.settings = settings or get_settings()
        sf = session_factory
        self.policy = Policy(sf)
        self.notifier = make_notifier(self.settings.notify_webhook_url)
        self.brain = brain or Brain(
            settings=self.settings, policy=self.policy, session_factory=sf, notifier=self.notifier,
        )
        self.workers = WorkerPool(
            self.brain, policy=self.policy, session_factory=sf, concurrency=self.settings.llm_concurrency,
        )
        self.evolver = Evolver(self.brain, policy=self.policy, session_factory=sf, notifier=self.notifier)
        self.workers.register(EVOLVE_JOB, self.evolver.handle_job)
        self.validation = ValidationController(
            builder, policy=self.policy, session_factory=sf, notifier=self.notifier,
        )
        self.scheduler = CycleScheduler(
            policy=self.policy,
            session_factory=sf,
            sensors=sensors,
            digest=DigestWriter(
                self.settings.data_dir, policy=self.policy, session_factory=sf, notifier=self.notifier,
            ),
            reflector=Reflector(self.brain, policy=self.policy, session_factory=sf),
            evolver=self.evolver,
            data_dir=self.settings.data_dir,
            healthcheck_url=self.settings.healthcheck_url,
        )
        self.loops = [
            PeriodicLoop("heartbeat", self.settings.heartbeat_interval_seconds, self.scheduler.tick, sf),
            PeriodicLoop("workers", self.settings.job_poll_interval_seconds, self.workers.poll, sf),
            PeriodicLoop("validation", self.settings.validation_poll_interval_seconds,
                         self.validation.run_pass, sf),
        ]

    async def run_once(self) -> None:
        for loop in self.loops:
            await loop.run_once()

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        await asyncio.gather(*(loop.run_forever(stop) for loop in self.loops))


async def _serve(once: bool) -> None:
    settings = get_settings()
    init_db(settings.resolved_database_url)
    organism = Organism(settings)
    if once:
        await organism.run_once()
        return
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    log.info("Organism alive (cloud %s)", "enabled" if settings.cloud_enabled else "disabled")
    await organism.run(stop)


def main() -> None:
    args = sys.argv[1:]
    if "--help" in args or "-h" in args:
        print(USAGE)
        sys.exit(0)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_serve(once="--once" in args))


if __name__ == "__main__":
    main()
