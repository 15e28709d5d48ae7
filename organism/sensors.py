"""Sensor collaborators.

A sensor discovers opportunities somewhere (a forum, a feed, an inbox) and
writes them with :func:`organism.opportunity.create_opportunity`. The
scheduler runs every sensor concurrently, each with its own session, and a
failing sensor never stops the others.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol

from sqlalchemy.orm import Session

from organism.opportunity import create_opportunity

log = logging.getLogger(__name__)


class Sensor(Protocol):
    name: str

    async def sense(self, session: Session) -> None: ...


class FunctionSensor:
    """Adapts a plain ``async def fn(session)`` into a :class:`Sensor`."""

    def __init__(self, name: str, fn: Callable[[Session], Awaitable[None]]):
        self.name = name
        self._fn = fn

    async def sense(self, session: Session) -> None:
        await self._fn(session)


class StaticSensor:
    """Feeds a fixed list of opportunity dicts, once. Useful for seeding and dry runs."""

    def __init__(self, name: str, items: Iterable[dict[str, Any]]):
        self.name = name
        self._items = list(items)

    async def sense(self, session: Session) -> None:
        created = 0
        for item in self._items:
            _, is_new = create_opportunity(
                session,
                title=item["title"],
                source=item.get("source", self.name),
                raw_text=item.get("raw_text", ""),
                evidence_url=item.get("evidence_url"),
                pain_score=float(item.get("pain_score", 0)),
                wtp_score=float(item.get("wtp_score", 0)),
                competition_score=float(item.get("competition_score", 0)),
                viability_score=float(item.get("viability_score", 0)),
            )
            created += int(is_new)
        session.commit()
        self._items = []
        if created:
            log.info("Sensor %s added %d opportunities", self.name, created)
