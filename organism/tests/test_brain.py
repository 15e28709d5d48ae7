"""Model routing, cloud budget gate and spend ledger tests."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from organism.brain import (
    Brain,
    CloudBackend,
    CloudReply,
    LLMCallError,
    cloud_chain,
    resolve_cloud_request,
)
from organism.budget import (
    budget_status,
    cloud_spend_summary,
    compute_cost,
    model_rate,
    today_spend,
)
from organism.config import Settings
from organism.models import Base, CloudApproval, CloudCall, Event
from organism.policy import StaticPolicy
from organism.utils import utcnow


@pytest.fixture()
def factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def local():
    backend = MagicMock()
    backend.generate = AsyncMock(return_value="local answer")
    return backend


@pytest.fixture()
def cloud():
    backend = MagicMock()
    # 4000 input + 2000 output tokens on gpt-4o cost $0.05
    backend.complete = AsyncMock(side_effect=lambda prompt, model, image=None: CloudReply(
        text="cloud answer", model=model, input_tokens=4000, output_tokens=2000,
    ))
    return backend


def _brain(factory, local, cloud=None, budget=2.0, **kwargs) -> Brain:
    settings = Settings(cloud_provider="openai", openai_api_key="", notify_webhook_url="")
    return Brain(
        settings=settings,
        policy=StaticPolicy({"daily_cloud_budget_usd": budget}),
        session_factory=factory,
        local=local,
        cloud=cloud,
        notifier=kwargs.pop("notifier", MagicMock(notify=AsyncMock())),
        approval_timeout=kwargs.pop("approval_timeout", 0.2),
        approval_poll_interval=kwargs.pop("approval_poll_interval", 0.02),
    )


def _seed_spend(factory, cost: float, model: str = "gpt-4o"):
    with factory() as session:
        session.add(CloudCall(model=model, task_type="planning", cost_usd=cost))
        session.commit()


def _events(factory, event_type: str) -> list[Event]:
    with factory() as session:
        return session.execute(select(Event).where(Event.type == event_type)).scalars().all()


# =========================================================================
# Budget tracker
# =========================================================================

class TestBudget:
    def test_longest_prefix_rate(self):
        assert model_rate("gpt-4o-mini-2024-07-18") == model_rate("gpt-4o-mini")
        assert model_rate("gpt-4o-2024-08-06") == model_rate("gpt-4o")
        assert model_rate("mystery-model") == model_rate("gpt-4o")
        assert model_rate("claude-haiku-4-5-20251001") == model_rate("claude-haiku-4-5")

    def test_compute_cost(self):
        assert compute_cost("gpt-4o", 4000, 2000) == pytest.approx(0.05)
        assert compute_cost("gpt-4o-mini", 1_000_000, 0) == pytest.approx(0.15)

    def test_budget_status_bands(self, factory):
        policy = StaticPolicy({"daily_budget_usd": 5})
        with factory() as session:
            assert budget_status(session, policy) == "normal"
        _seed_spend(factory, 4.0)
        with factory() as session:
            assert budget_status(session, policy) == "lean"
        _seed_spend(factory, 1.0)
        with factory() as session:
            assert budget_status(session, policy) == "exhausted"

    def test_yesterday_does_not_count(self, factory):
        with factory() as session:
            session.add(CloudCall(model="gpt-4o", cost_usd=3.0, created_at=utcnow() - timedelta(days=1, hours=1)))
            session.commit()
            assert today_spend(session) == 0.0

    def test_remaining_never_negative(self, factory):
        _seed_spend(factory, 3.5)
        with factory() as session:
            summary = cloud_spend_summary(session, StaticPolicy({"daily_cloud_budget_usd": 2}))
        assert summary["remaining"] == 0.0
        assert summary["today"] == pytest.approx(3.5)
        assert summary["breakdown"] == [{"model": "gpt-4o", "calls": 1, "cost": pytest.approx(3.5)}]


# =========================================================================
# Routing
# =========================================================================

class TestRouting:
    def test_cloud_chain_starts_with_primary(self):
        assert cloud_chain("scoring") == ["gpt-4o-mini", "gpt-4o"]
        assert cloud_chain("code")[0] == "gpt-4o"
        assert cloud_chain("code", "anthropic")[0] == "claude-sonnet-4-5"
        assert cloud_chain("poetry", "mystery") == cloud_chain("planning")

    @pytest.mark.asyncio
    async def test_no_cloud_credentials_goes_local(self, factory, local):
        brain = _brain(factory, local)
        response = await brain.complete("hi", task="chat")
        assert response.backend == "local"
        assert response.cost_usd == 0.0
        assert _events(factory, "cloud_budget_approval_requested") == []

    @pytest.mark.asyncio
    async def test_force_local_skips_cloud(self, factory, local, cloud):
        brain = _brain(factory, local, cloud)
        response = await brain.complete("hi", force_local=True)
        assert response.backend == "local"
        cloud.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_under_budget_uses_cloud_and_records_spend(self, factory, local, cloud):
        brain = _brain(factory, local, cloud)
        response = await brain.complete("plan this", "planning test", task="planning")
        assert response.backend == "cloud"
        assert response.model == "gpt-4o"
        assert response.cost_usd == pytest.approx(0.05)
        with factory() as session:
            calls = session.execute(select(CloudCall)).scalars().all()
        assert len(calls) == 1
        assert calls[0].input_tokens == 4000
        assert calls[0].reason == "planning test"
        local.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cloud_failure_falls_back_to_local(self, factory, local):
        failing = MagicMock()
        failing.complete = AsyncMock(side_effect=LLMCallError("down", retryable=True))
        brain = _brain(factory, local, failing)
        response = await brain.complete("hi", task="planning")
        assert response.backend == "local"
        assert failing.complete.await_count == len(cloud_chain("planning"))
        with factory() as session:
            assert session.execute(select(CloudCall)).first() is None

    @pytest.mark.asyncio
    async def test_local_task_model_then_default(self, factory):
        local = MagicMock()
        local.generate = AsyncMock(side_effect=[LLMCallError("missing model"), "from default"])
        brain = _brain(factory, local)
        brain.local_models["code"] = "coder"
        brain.default_local_model = "general"
        response = await brain.complete("fix it", task="code")
        assert response.text == "from default"
        assert [c.args[1] for c in local.generate.await_args_list] == ["coder", "general"]

    @pytest.mark.asyncio
    async def test_all_local_models_down_raises(self, factory):
        local = MagicMock()
        local.generate = AsyncMock(side_effect=LLMCallError("down"))
        brain = _brain(factory, local)
        with pytest.raises(LLMCallError) as exc_info:
            await brain.complete("hi")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_image_uses_vision_model_only(self, factory, local):
        brain = _brain(factory, local)
        brain.vision_model = "eyes"
        await brain.complete("what is this", image_base64="aGVsbG8=")
        assert local.generate.await_args.args[1] == "eyes"
        assert local.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_task_routes_as_planning(self, factory, local, cloud):
        brain = _brain(factory, local, cloud)
        response = await brain.complete("hi", task="poetry")
        assert response.model == cloud_chain("planning")[0]


# =========================================================================
# Budget gate
# =========================================================================

class TestBudgetGate:
    @pytest.mark.asyncio
    async def test_spend_just_under_budget_still_goes_cloud_then_gates(self, factory, local, cloud):
        _seed_spend(factory, 1.98)
        brain = _brain(factory, local, cloud, budget=2.0)

        first = await brain.complete("one", task="planning")
        assert first.backend == "cloud"
        with factory() as session:
            assert today_spend(session) == pytest.approx(2.03)

        second = await brain.complete("two", task="planning")
        assert second.backend == "local"
        assert cloud.complete.await_count == 1
        with factory() as session:
            approval = session.execute(select(CloudApproval)).scalars().one()
        assert approval.status == "timeout"

    @pytest.mark.asyncio
    async def test_timeout_records_blocked_event_and_uses_local(self, factory, local, cloud):
        _seed_spend(factory, 5.0)
        notifier = MagicMock(notify=AsyncMock())
        brain = _brain(factory, local, cloud, notifier=notifier, approval_timeout=0.1)

        response = await brain.complete("over budget", task="planning")

        assert response.backend == "local"
        cloud.complete.assert_not_awaited()
        notifier.notify.assert_awaited_once()
        blocked = _events(factory, "cloud_budget_blocked")
        assert len(blocked) == 1
        assert '"timeout"' in blocked[0].payload_json

    @pytest.mark.asyncio
    async def test_approval_lets_cloud_call_through(self, factory, local, cloud):
        _seed_spend(factory, 5.0)
        brain = _brain(factory, local, cloud, approval_timeout=5.0, approval_poll_interval=0.01)
        task = asyncio.create_task(brain.complete("please", task="planning"))

        request_id = None
        for _ in range(200):
            await asyncio.sleep(0.01)
            with factory() as session:
                request_id = session.execute(
                    select(CloudApproval.id).where(CloudApproval.status == "pending")
                ).scalar()
            if request_id:
                break
        assert request_id is not None
        with factory() as session:
            assert resolve_cloud_request(session, request_id, approved=True) is True

        response = await task
        assert response.backend == "cloud"
        assert _events(factory, "cloud_budget_blocked") == []

    @pytest.mark.asyncio
    async def test_rejection_falls_back_to_local(self, factory, local, cloud):
        _seed_spend(factory, 5.0)
        brain = _brain(factory, local, cloud, approval_timeout=5.0, approval_poll_interval=0.01)
        task = asyncio.create_task(brain.complete("please", task="planning"))

        for _ in range(200):
            await asyncio.sleep(0.01)
            with factory() as session:
                request_id = session.execute(
                    select(CloudApproval.id).where(CloudApproval.status == "pending")
                ).scalar()
            if request_id:
                break
        with factory() as session:
            resolve_cloud_request(session, request_id, approved=False)

        response = await task
        assert response.backend == "local"
        cloud.complete.assert_not_awaited()
        assert '"rejected"' in _events(factory, "cloud_budget_blocked")[0].payload_json

    def test_resolve_only_pending(self, factory):
        with factory() as session:
            session.add(CloudApproval(reason="r", status="timeout"))
            session.commit()
            assert resolve_cloud_request(session, 1, approved=True) is False
            assert resolve_cloud_request(session, 42, approved=True) is False


# =========================================================================
# Cloud backend adapters
# =========================================================================

class TestCloudBackend:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            CloudBackend("key", provider="carrier-pigeon")

    @pytest.mark.asyncio
    async def test_anthropic_reply(self):
        backend = CloudBackend("key", provider="anthropic")
        backend._client = MagicMock()
        backend._client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text='{"score": 61}')],
            usage=SimpleNamespace(input_tokens=120, output_tokens=30),
        ))

        reply = await backend.complete("score this", "claude-haiku-4-5")

        assert reply.text == '{"score": 61}'
        assert (reply.input_tokens, reply.output_tokens) == (120, 30)
        assert backend._client.messages.create.await_args.kwargs["model"] == "claude-haiku-4-5"

    @pytest.mark.asyncio
    async def test_openai_image_request(self):
        backend = CloudBackend("key", provider="openai")
        backend._client = MagicMock()
        backend._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="a chart"))],
            usage=SimpleNamespace(prompt_tokens=900, completion_tokens=4),
        ))

        reply = await backend.complete("describe", "gpt-4o-mini", image_base64="aGVsbG8=")

        assert reply.text == "a chart"
        content = backend._client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_sdk_errors_become_retryable(self):
        backend = CloudBackend("key", provider="openai")
        backend._client = MagicMock()
        backend._client.chat.completions.create = AsyncMock(side_effect=RuntimeError("429"))
        with pytest.raises(LLMCallError) as exc_info:
            await backend.complete("hi", "gpt-4o")
        assert exc_info.value.retryable is True
