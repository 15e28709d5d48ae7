"""Process wiring, loops, config and session helper tests."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import organism.db as db_mod
from organism.brain import BrainResponse
from organism.config import Settings, load_yaml
from organism.db import seed_policies, session_generator, session_scope
from organism.models import Base, Cycle, Event, LLMJob, Opportunity, PolicyRow
from organism.notify import LogNotifier, WebhookNotifier, make_notifier
from organism.opportunity import current_status
from organism.policy import Policy
from organism.runtime import Organism, PeriodicLoop
from organism.sensors import StaticSensor


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# =========================================================================
# Periodic loops
# =========================================================================

class TestPeriodicLoop:
    @pytest.mark.asyncio
    async def test_errors_are_recorded_not_raised(self, factory):
        loop = PeriodicLoop("workers", 1.0, AsyncMock(side_effect=RuntimeError("db locked")), factory)
        assert await loop.run_once() is True
        with factory() as session:
            event = session.execute(select(Event).where(Event.type == "loop_error")).scalars().one()
        assert "db locked" in event.payload_json

    @pytest.mark.asyncio
    async def test_busy_loop_skips(self, factory):
        release = asyncio.Event()
        calls = 0

        async def body():
            nonlocal calls
            calls += 1
            await release.wait()

        loop = PeriodicLoop("heartbeat", 1.0, body, factory)
        first = asyncio.create_task(loop.run_once())
        await asyncio.sleep(0)
        assert await loop.run_once() is False
        release.set()
        assert await first is True
        assert calls == 1

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, factory):
        body = AsyncMock()
        loop = PeriodicLoop("validation", 0.01, body, factory)
        stop = asyncio.Event()
        task = asyncio.create_task(loop.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert body.await_count >= 2


# =========================================================================
# Organism wiring
# =========================================================================

class TestOrganism:
    @pytest.mark.asyncio
    async def test_run_once_drives_all_loops(self, factory, tmp_path):
        brain = MagicMock()
        brain.call_local = AsyncMock(return_value=BrainResponse(text="{}", backend="local", model="m"))
        brain.call = AsyncMock(return_value="[]")
        brain.complete = AsyncMock(return_value=BrainResponse(text='{"score": 80}', backend="local", model="m"))
        settings = Settings(
            data_dir=tmp_path, database_url="sqlite://", healthcheck_url="", notify_webhook_url="",
            openai_api_key="", llm_concurrency=2,
        )
        sensor = StaticSensor("seed", [{"title": "Late invoice nudger", "viability_score": 65}])

        organism = Organism(settings, sensors=[sensor], session_factory=factory, brain=brain)
        await organism.run_once()

        with factory() as session:
            cycle = session.execute(select(Cycle)).scalars().one()
            assert cycle.status == "success"
            opp = session.execute(select(Opportunity)).scalars().one()
            # planned by the worker, then launched by the validation controller
            assert current_status(session, opp.id) == "building"
            evolve_job = session.execute(select(LLMJob).where(LLMJob.job_type == "evolve")).scalars().one()
            assert evolve_job.status == "done"
        assert (tmp_path / "latest_digest.md").exists()
        assert isinstance(organism.notifier, LogNotifier)


# =========================================================================
# Config, policies, notifications, sessions
# =========================================================================

class TestConfig:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "organism.yaml"
        path.write_text("llm_concurrency: 4\nhealthcheck_url: ''\n", encoding="utf-8")
        data = load_yaml(path)
        assert data == {"llm_concurrency": 4, "healthcheck_url": ""}
        assert Settings(**data).llm_concurrency == 4

    def test_load_yaml_missing_or_not_a_mapping(self, tmp_path):
        assert load_yaml(tmp_path / "absent.yaml") == {}
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        assert load_yaml(path) == {}

    def test_default_database_url(self, tmp_path):
        settings = Settings(data_dir=tmp_path, database_url="")
        assert settings.resolved_database_url == f"sqlite:///{tmp_path / 'organism.db'}"


class TestPolicyStore:
    def test_seed_then_read_through(self, engine, factory):
        seed_policies(engine)
        seed_policies(engine)
        with factory() as session:
            assert len(session.execute(select(PolicyRow)).scalars().all()) == 10
        policy = Policy(factory)
        assert policy.get_int("pursue_threshold") == 30
        policy.set("pursue_threshold", 45)
        assert policy.get_float("pursue_threshold") == 45.0
        assert policy.all()["pursue_threshold"] == 45

    def test_init_db_creates_tables_and_seeds(self, tmp_path, monkeypatch):
        monkeypatch.setattr(db_mod, "_engine", None)
        monkeypatch.setattr(db_mod, "_SessionLocal", None)
        url = f"sqlite:///{tmp_path / 'organism.db'}"
        db_mod.init_db(url)
        db_mod.init_db(url)
        try:
            with db_mod.get_session() as session:
                assert len(session.execute(select(PolicyRow)).scalars().all()) == 10
                assert session.execute(select(Cycle)).first() is None
        finally:
            db_mod._engine.dispose()

    def test_missing_key_uses_default(self, factory):
        assert Policy(factory).get_float("zombie_kill_days") == 5.0

    def test_non_numeric_value_falls_back(self, factory):
        policy = Policy(factory)
        policy.set("max_concurrent_validations", "many")
        assert policy.get_int("max_concurrent_validations") == 3


class TestNotify:
    def test_make_notifier(self):
        assert isinstance(make_notifier(""), LogNotifier)
        assert isinstance(make_notifier("https://hooks.example/x"), WebhookNotifier)

    @pytest.mark.asyncio
    async def test_webhook_failure_never_raises(self):
        await WebhookNotifier("http://127.0.0.1:9/hook", timeout=0.5).notify("subject", "body")


class TestSessionManagement:
    def test_session_scope_with_factory(self, factory):
        with session_scope(factory) as sess:
            assert isinstance(sess, Session)
            sess.add(Opportunity(title="ScopeTest"))
            sess.commit()
        with factory() as sess:
            assert sess.execute(select(Opportunity.title)).scalar() == "ScopeTest"

    def test_session_scope_rollback(self, factory):
        with pytest.raises(ValueError):
            with session_scope(factory) as sess:
                sess.add(Opportunity(title="WillFail"))
                sess.flush()
                raise ValueError("boom")
        with factory() as sess:
            assert sess.execute(select(Opportunity)).first() is None

    def test_session_generator(self, engine, factory, monkeypatch):
        monkeypatch.setattr(db_mod, "_SessionLocal", factory)
        gen = session_generator()
        sess = next(gen)
        assert isinstance(sess, Session)
        gen.close()

    def test_get_session_requires_init(self, monkeypatch):
        monkeypatch.setattr(db_mod, "_SessionLocal", None)
        with pytest.raises(RuntimeError):
            db_mod.get_session()
