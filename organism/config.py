from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

TASK_TYPES = ("code", "planning", "reflect", "chat", "scoring")


def _resolve_home() -> Path:
    override = os.getenv("ORGANISM_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.environ[key])
    except (KeyError, ValueError):
        return default


def _default_local_models() -> dict[str, str]:
    default = _env("OLLAMA_MODEL", "deepseek-v3.1:671b-cloud")
    return {
        "code": _env("OLLAMA_CODE_MODEL", "qwen2.5-coder:32b"),
        "planning": _env("OLLAMA_DEFAULT_MODEL", default),
        "reflect": _env("OLLAMA_DEFAULT_MODEL", default),
        "chat": _env("OLLAMA_DEFAULT_MODEL", default),
        "scoring": _env("OLLAMA_DEFAULT_MODEL", default),
    }


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    data_dir: Path = Field(default_factory=lambda: _resolve_home() / "data")
    database_url: str = Field(default_factory=lambda: _env("ORGANISM_DATABASE_URL"))

    heartbeat_interval_seconds: float = Field(default_factory=lambda: _env_float("HEARTBEAT_INTERVAL_SECONDS", 60.0))
    job_poll_interval_seconds: float = 5.0
    validation_poll_interval_seconds: float = Field(
        default_factory=lambda: _env_float("VALIDATION_POLL_INTERVAL_SECONDS", 60.0)
    )
    llm_concurrency: int = Field(default_factory=lambda: int(_env_float("LLM_CONCURRENCY", 2)))

    ollama_url: str = Field(default_factory=lambda: _env("OLLAMA_URL", "http://localhost:11434"))
    ollama_default_model: str = Field(default_factory=lambda: _env("OLLAMA_MODEL", "deepseek-v3.1:671b-cloud"))
    ollama_vision_model: str = Field(default_factory=lambda: _env("OLLAMA_VISION_MODEL", "llama3.2-vision"))
    ollama_task_models: dict[str, str] = Field(default_factory=_default_local_models)
    local_timeout_seconds: float = 300.0

    # "openai" (or any OpenAI-compatible endpoint) or "anthropic"
    cloud_provider: str = Field(default_factory=lambda: _env("ORGANISM_CLOUD_PROVIDER", "openai").lower())
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))
    anthropic_api_key: str = Field(default_factory=lambda: _env("ANTHROPIC_API_KEY"))

    # Human sign-off window before an over-budget cloud call falls back to local.
    approval_timeout_seconds: float = 300.0
    approval_poll_interval_seconds: float = 10.0

    healthcheck_url: str = "https://example.com"
    notify_webhook_url: str = Field(default_factory=lambda: _env("ORGANISM_NOTIFY_WEBHOOK"))

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir / 'organism.db'}"

    @property
    def cloud_api_key(self) -> str:
        return self.anthropic_api_key if self.cloud_provider == "anthropic" else self.openai_api_key

    @property
    def cloud_enabled(self) -> bool:
        return bool(self.cloud_api_key)


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Environment-backed settings, optionally overlaid by ``$ORGANISM_CONFIG`` (YAML)."""
    overrides: dict[str, Any] = {}
    config_path = _env("ORGANISM_CONFIG")
    if config_path:
        overrides = load_yaml(Path(config_path).expanduser())
    settings = Settings(**overrides)
    settings.ensure_directories()
    return settings
