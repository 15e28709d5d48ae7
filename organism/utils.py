"""Shared utility functions used across Organism modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

_MISSING = object()

_FENCE_RE = re.compile(r"```(?:json)?")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value, default=str)


def strip_fences(text: str) -> str:
    """Remove markdown code fences a model may wrap around JSON."""
    return _FENCE_RE.sub("", text or "").strip()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back for DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)
