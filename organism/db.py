from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from organism.models import Base

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def init_db(database_url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if database_url is None:
            from organism.config import get_settings
            database_url = get_settings().resolved_database_url
        _engine = make_engine(database_url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_policies(_engine)


def seed_policies(engine) -> None:
    """Insert default policies whose keys are not present yet."""
    from organism.policy import DEFAULT_POLICIES
    from organism.utils import json_dump
    with engine.begin() as conn:
        existing = {row[0] for row in conn.execute(text("SELECT key FROM policies"))}
        for key, value in DEFAULT_POLICIES.items():
            if key in existing:
                continue
            conn.execute(text(
                "INSERT INTO policies (key, value_json, updated_at) VALUES (:key, :value, CURRENT_TIMESTAMP)"
            ), {"key": key, "value": json_dump(value)})


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


SessionFactory = Callable[[], Session]


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (loops, MCP server, scripts)::

        with session_scope() as session:
            ...

    Components take an optional *factory* so tests can hand in a sessionmaker
    bound to an in-memory engine.
    """
    session = (factory or get_session)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
