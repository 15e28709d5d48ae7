"""Runtime-tunable policy values.

Every component receives a policy accessor and calls ``get`` at the moment it
needs a value; nothing is cached, so a tuning change lands on the next read.
Tests inject :class:`StaticPolicy` instead of the store-backed :class:`Policy`.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from organism.db import SessionFactory, session_scope
from organism.models import PolicyRow
from organism.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

DEFAULT_POLICIES: dict[str, Any] = {
    "daily_budget_usd": 5,
    "daily_cloud_budget_usd": 2,
    "min_viability_score": 20,
    "pursue_threshold": 30,
    "cloud_plan_min_viability": 60,
    "max_concurrent_validations": 3,
    "zombie_kill_days": 5,
    "validation_window_hours": 48,
    "source_weights": {},
    "evolve_interval_hours": 24,
}

# Keys the reflection step may rewrite, with the bounds it must stay inside.
TUNABLE_BOUNDS: dict[str, tuple[float, float]] = {
    "min_viability_score": (0, 90),
    "pursue_threshold": (10, 90),
    "max_concurrent_validations": (1, 10),
    "zombie_kill_days": (1, 30),
    "validation_window_hours": (12, 168),
}


class PolicySource:
    """Interface every policy accessor implements: `get`, `set` and typed reads."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def get_float(self, key: str, default: float | None = None) -> float:
        fallback = DEFAULT_POLICIES.get(key, 0) if default is None else default
        value = self.get(key, fallback)
        try:
            return float(value)
        except (TypeError, ValueError):
            log.warning("Policy %s has non-numeric value %r, using %s", key, value, fallback)
            return float(fallback)

    def get_int(self, key: str, default: int | None = None) -> int:
        return int(self.get_float(key, default))

    def get_dict(self, key: str) -> dict[str, Any]:
        value = self.get(key, {})
        return value if isinstance(value, dict) else {}

    def all(self) -> dict[str, Any]:
        return {key: self.get(key) for key in DEFAULT_POLICIES}


class Policy(PolicySource):
    """Read-through accessor over the ``policies`` table."""

    def __init__(self, session_factory: SessionFactory | None = None):
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        if default is None:
            default = DEFAULT_POLICIES.get(key)
        with session_scope(self._session_factory) as session:
            row = session.execute(select(PolicyRow).where(PolicyRow.key == key)).scalars().first()
            if row is None:
                return default
            value = json_parse(row.value_json, None)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        with session_scope(self._session_factory) as session:
            row = session.execute(select(PolicyRow).where(PolicyRow.key == key)).scalars().first()
            if row is None:
                session.add(PolicyRow(key=key, value_json=json_dump(value)))
            else:
                row.value_json = json_dump(value)
                row.updated_at = utcnow()
            session.commit()

    def all(self) -> dict[str, Any]:
        with session_scope(self._session_factory) as session:
            rows = session.execute(select(PolicyRow).order_by(PolicyRow.key)).scalars().all()
            return {r.key: json_parse(r.value_json, None) for r in rows}


class StaticPolicy(PolicySource):
    """In-memory policy source."""

    def __init__(self, values: dict[str, Any] | None = None):
        self.values: dict[str, Any] = {**DEFAULT_POLICIES, **(values or {})}

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def all(self) -> dict[str, Any]:
        return dict(self.values)


def clamp_policy_value(key: str, value: Any) -> float | None:
    """Clamp a proposed tuning value into its bounds, None if not tunable."""
    bounds = TUNABLE_BOUNDS.get(key)
    if bounds is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    lo, hi = bounds
    return max(lo, min(hi, number))
