"""Model router: a free local backend (Ollama) and a metered cloud backend (OpenAI or Anthropic).

Routing
-------
1. ``force_local`` or no cloud credentials: local backend, task model first,
   then the default local model. Image requests use the vision model only.
2. Cloud spend today (from the ``cloud_calls`` ledger) below the
   ``daily_cloud_budget_usd`` policy: the task's cloud chain, then local.
3. At or over budget: a :class:`~organism.models.CloudApproval` is opened and
   the operator notified. The request waits (polling) for a decision, at most
   ``approval_timeout`` seconds. Approved: cloud as in 2. Rejected or timed
   out: local.

Every successful cloud call appends a ledger row with exact token counts and
the computed cost. When every backend fails, :class:`LLMCallError` is the one
error the caller sees.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from organism.budget import record_cloud_call, today_spend
from organism.config import TASK_TYPES, Settings, get_settings
from organism.db import SessionFactory, session_scope
from organism.events import record_event
from organism.models import CloudApproval
from organism.notify import LogNotifier, Notifier
from organism.policy import Policy, PolicySource
from organism.utils import utcnow

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed on every backend that was tried."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# Cloud model chain by provider and task: primary first, cheaper models for lightweight tasks.
CLOUD_MODELS: dict[str, dict[str, list[str]]] = {
    "openai": {
        "code": ["gpt-4o", "gpt-4o-mini"],
        "planning": ["gpt-4o", "gpt-4o-mini"],
        "reflect": ["gpt-4o", "gpt-4o-mini"],
        "chat": ["gpt-4o-mini"],
        "scoring": ["gpt-4o-mini", "gpt-4o"],
    },
    "anthropic": {
        "code": ["claude-sonnet-4-5", "claude-haiku-4-5"],
        "planning": ["claude-sonnet-4-5", "claude-haiku-4-5"],
        "reflect": ["claude-sonnet-4-5", "claude-haiku-4-5"],
        "chat": ["claude-haiku-4-5"],
        "scoring": ["claude-haiku-4-5", "claude-sonnet-4-5"],
    },
}


@dataclass
class CloudReply:
    text: str
    model: str
    input_tokens: int
    output_tokens: int


@dataclass
class BrainResponse:
    text: str
    backend: str  # "cloud" | "local"
    model: str
    cost_usd: float = 0.0


def cloud_chain(task: str, provider: str = "openai") -> list[str]:
    chains = CLOUD_MODELS.get(provider, CLOUD_MODELS["openai"])
    return list(chains.get(task, chains["planning"]))


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class LocalBackend:
    """Ollama ``/api/generate`` over httpx."""

    def __init__(self, base_url: str, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def generate(self, prompt: str, model: str, image_base64: str | None = None) -> str:
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if image_base64:
            payload["images"] = [image_base64]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.HTTPError as exc:
            raise LLMCallError(f"Ollama unreachable ({model}): {exc}", retryable=True) from exc
        if resp.status_code != 200:
            raise LLMCallError(f"Ollama unavailable ({model}): {resp.status_code}", retryable=True)
        return str(resp.json().get("response", ""))


class CloudBackend:
    """Metered cloud client supporting OpenAI (and compatible endpoints) and Anthropic."""

    def __init__(self, api_key: str, base_url: str | None = None, provider: str = "openai"):
        self.provider = provider
        if provider == "anthropic":
            import anthropic
            self._client: Any = anthropic.AsyncAnthropic(api_key=api_key)
        elif provider in ("openai", "openai_compatible"):
            import openai
            kwargs: dict[str, Any] = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown cloud provider: {provider!r}")

    async def complete(self, prompt: str, model: str, image_base64: str | None = None) -> CloudReply:
        try:
            if self.provider == "anthropic":
                return await self._complete_anthropic(prompt, model, image_base64)
            return await self._complete_openai(prompt, model, image_base64)
        except Exception as exc:
            raise LLMCallError(f"{self.provider} error ({model}): {exc}", retryable=True) from exc

    async def _complete_openai(self, prompt: str, model: str, image_base64: str | None) -> CloudReply:
        if image_base64:
            content: Any = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {
                    "url": f"data:image/jpeg;base64,{image_base64}", "detail": "low",
                }},
            ]
        else:
            content = prompt
        response = await self._client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": content}],
            temperature=0.3,
        )
        usage = response.usage
        return CloudReply(
            text=response.choices[0].message.content or "",
            model=model,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    async def _complete_anthropic(self, prompt: str, model: str, image_base64: str | None) -> CloudReply:
        if image_base64:
            content: Any = [
                {"type": "image", "source": {
                    "type": "base64", "media_type": "image/jpeg", "data": image_base64,
                }},
                {"type": "text", "text": prompt},
            ]
        else:
            content = prompt
        response = await self._client.messages.create(
            model=model,
            max_tokens=4096,
            messages=[{"role": "user", "content": content}],
            temperature=0.3,
        )
        usage = response.usage
        return CloudReply(
            text="".join(getattr(block, "text", "") for block in response.content),
            model=model,
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
        )


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class Brain:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        policy: PolicySource | None = None,
        session_factory: SessionFactory | None = None,
        local: LocalBackend | None = None,
        cloud: CloudBackend | None = None,
        notifier: Notifier | None = None,
        approval_timeout: float | None = None,
        approval_poll_interval: float | None = None,
    ):
        settings = settings or get_settings()
        self._session_factory = session_factory
        self.policy = policy or Policy(session_factory)
        self.local = local or LocalBackend(settings.ollama_url, settings.local_timeout_seconds)
        if cloud is None and settings.cloud_enabled:
            cloud = CloudBackend(
                settings.cloud_api_key, settings.openai_base_url or None, settings.cloud_provider,
            )
        self.cloud = cloud
        self.cloud_provider = settings.cloud_provider
        self.notifier = notifier or LogNotifier()
        self.default_local_model = settings.ollama_default_model
        self.vision_model = settings.ollama_vision_model
        self.local_models = dict(settings.ollama_task_models)
        self.approval_timeout = (
            settings.approval_timeout_seconds if approval_timeout is None else approval_timeout
        )
        self.approval_poll_interval = (
            settings.approval_poll_interval_seconds if approval_poll_interval is None
            else approval_poll_interval
        )

    async def call(
        self, prompt: str, reason: str = "general task", *,
        task: str = "planning", force_local: bool = False, image_base64: str | None = None,
    ) -> str:
        response = await self.complete(
            prompt, reason, task=task, force_local=force_local, image_base64=image_base64,
        )
        return response.text

    async def complete(
        self, prompt: str, reason: str = "general task", *,
        task: str = "planning", force_local: bool = False, image_base64: str | None = None,
    ) -> BrainResponse:
        if task not in TASK_TYPES:
            log.warning("Unknown task type %r, routing as planning", task)
            task = "planning"
        if force_local or self.cloud is None:
            return await self.call_local(prompt, task, image_base64)

        with session_scope(self._session_factory) as session:
            spent = today_spend(session)
        budget = self.policy.get_float("daily_cloud_budget_usd")

        if spent < budget:
            try:
                return await self._call_cloud(prompt, task, reason, image_base64)
            except LLMCallError as exc:
                log.warning("Cloud failed (%s), using local", exc)
                return await self.call_local(prompt, task, image_base64)

        approved = await self.request_approval(
            f"Daily cloud budget ${budget:.2f} reached (${spent:.2f} spent). {reason}"
        )
        if approved:
            try:
                return await self._call_cloud(prompt, task, reason, image_base64)
            except LLMCallError as exc:
                log.warning("Cloud failed after approval (%s), using local", exc)
        return await self.call_local(prompt, task, image_base64)

    # -- local ---------------------------------------------------------------

    def local_chain(self, task: str, image_base64: str | None = None) -> list[str]:
        if image_base64:
            return [self.vision_model]
        preferred = self.local_models.get(task) or self.default_local_model
        if preferred == self.default_local_model:
            return [preferred]
        return [preferred, self.default_local_model]

    async def call_local(
        self, prompt: str, task: str = "planning", image_base64: str | None = None,
    ) -> BrainResponse:
        """Local backend only; never touches the cloud budget."""
        errors: list[str] = []
        for model in self.local_chain(task, image_base64):
            try:
                log.info("Local [%s] for %s", model, task)
                text = await self.local.generate(prompt, model, image_base64)
                return BrainResponse(text=text, backend="local", model=model)
            except Exception as exc:
                log.warning("Local model %s unavailable: %s", model, exc)
                errors.append(f"{model}: {exc}")
        raise LLMCallError("All local models unavailable: " + "; ".join(errors), retryable=True)

    # -- cloud ---------------------------------------------------------------

    async def _call_cloud(
        self, prompt: str, task: str, reason: str, image_base64: str | None,
    ) -> BrainResponse:
        errors: list[str] = []
        for model in cloud_chain(task, self.cloud_provider):
            try:
                log.info("Cloud [%s] for %s", model, task)
                reply = await self.cloud.complete(prompt, model, image_base64)  # type: ignore[union-attr]
            except Exception as exc:
                log.warning("Cloud model %s failed: %s", model, exc)
                errors.append(f"{model}: {exc}")
                continue
            cost = self._record_spend(reply, task, reason)
            return BrainResponse(text=reply.text, backend="cloud", model=reply.model, cost_usd=cost)
        raise LLMCallError("All cloud models failed: " + "; ".join(errors), retryable=True)

    def _record_spend(self, reply: CloudReply, task: str, reason: str) -> float:
        with session_scope(self._session_factory) as session:
            call = record_cloud_call(
                session, model=reply.model, task_type=task, reason=reason,
                input_tokens=reply.input_tokens, output_tokens=reply.output_tokens,
            )
            session.commit()
            return call.cost_usd

    # -- approval gate ---------------------------------------------------------

    async def request_approval(self, reason: str) -> bool:
        """Open an approval request and wait (bounded) for the operator's answer."""
        with session_scope(self._session_factory) as session:
            request = CloudApproval(reason=reason)
            session.add(request)
            session.flush()
            record_event(session, "cloud_budget_approval_requested", {
                "approval_id": request.id, "reason": reason,
            })
            session.commit()
            request_id = request.id

        log.warning("Cloud budget limit hit: %s (approval #%s, %.0fs timeout)",
                    reason, request_id, self.approval_timeout)
        await self.notifier.notify(
            "Cloud budget limit hit",
            f"{reason}\nApprove or reject request #{request_id} within "
            f"{self.approval_timeout:.0f}s, otherwise the local model is used.",
        )

        try:
            status = await asyncio.wait_for(
                self._await_decision(request_id), timeout=self.approval_timeout,
            )
        except asyncio.TimeoutError:
            status = self._expire_request(request_id)

        if status == "approved":
            log.info("Cloud request %s approved", request_id)
            return True
        with session_scope(self._session_factory) as session:
            record_event(session, "cloud_budget_blocked", {
                "approval_id": request_id, "reason": "timeout" if status == "timeout" else status,
            })
            session.commit()
        log.info("Cloud request %s %s, falling back to local", request_id, status)
        return False

    def _approval_status(self, request_id: int) -> str:
        with session_scope(self._session_factory) as session:
            status = session.execute(
                select(CloudApproval.status).where(CloudApproval.id == request_id)
            ).scalar()
        return status or "pending"

    async def _await_decision(self, request_id: int) -> str:
        while True:
            await asyncio.sleep(self.approval_poll_interval)
            status = self._approval_status(request_id)
            if status != "pending":
                return status

    def _expire_request(self, request_id: int) -> str:
        """Mark a still-pending request ``timeout``; an answer that won the race stands."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(CloudApproval)
                .where(CloudApproval.id == request_id, CloudApproval.status == "pending")
                .values(status="timeout", resolved_at=utcnow())
            )
            session.commit()
        if result.rowcount == 1:
            return "timeout"
        return self._approval_status(request_id)


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


def resolve_cloud_request(session: Session, request_id: int, approved: bool) -> bool:
    """Approve or reject a pending request. Returns False if it was not pending."""
    result = session.execute(
        update(CloudApproval)
        .where(CloudApproval.id == request_id, CloudApproval.status == "pending")
        .values(status="approved" if approved else "rejected", resolved_at=utcnow())
    )
    session.commit()
    return result.rowcount == 1
