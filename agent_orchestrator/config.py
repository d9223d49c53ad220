"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_CONCURRENCY: Dict[str, int] = {
    "production_planning": 2,
    "inventory_intelligence": 3,
    "compliance": 1,
    "customer_experience": 2,
    "financial_operations": 1,
}


@dataclass(frozen=True)
class QueueConfig:
    """Defaults applied to every job entering a worker pool."""

    attempts: int = 3
    backoff_ms: int = 2000
    timeout_ms: int = 300_000
    stall_interval_ms: int = 30_000
    keep_completed: int = 100
    keep_failed: int = 50
    shutdown_grace_ms: int = 10_000


@dataclass(frozen=True)
class AgentDefaults:
    """Model settings used when an agent type does not override them."""

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4000


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestrator-level knobs: pool sizes, health cadence, schedules."""

    concurrency: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))
    health_check_interval_ms: int = 60_000
    enable_scheduled_tasks: bool = True


@dataclass(frozen=True)
class MetricsConfig:
    """Metrics recorder settings."""

    interval_ms: int = 60_000
    history_size: int = 1000
    prefix: str = "brewmaster"


@dataclass(frozen=True)
class OpenAIConfig:
    """Language-model service configuration."""

    api_key: str
    base_url: Optional[str] = None
    max_concurrent: int = 10


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    queue: QueueConfig = field(default_factory=QueueConfig)
    agents: AgentDefaults = field(default_factory=AgentDefaults)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    openai: Optional[OpenAIConfig] = None
    task_store_path: str = ""
    log_level: str = "INFO"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        queue = QueueConfig(
            attempts=_env_int("QUEUE_ATTEMPTS", 3),
            backoff_ms=_env_int("QUEUE_BACKOFF_MS", 2000),
            timeout_ms=_env_int("QUEUE_TIMEOUT_MS", 300_000),
            stall_interval_ms=_env_int("QUEUE_STALL_INTERVAL_MS", 30_000),
            keep_completed=_env_int("QUEUE_KEEP_COMPLETED", 100),
            keep_failed=_env_int("QUEUE_KEEP_FAILED", 50),
            shutdown_grace_ms=_env_int("QUEUE_SHUTDOWN_GRACE_MS", 10_000),
        )

        agents = AgentDefaults(
            model=os.getenv("AGENT_DEFAULT_MODEL", "gpt-4o-mini"),
            temperature=_env_float("AGENT_DEFAULT_TEMPERATURE", 0.7),
            max_tokens=_env_int("AGENT_DEFAULT_MAX_TOKENS", 4000),
        )

        concurrency = {
            agent_type: _env_int(f"CONCURRENCY_{agent_type.upper()}", default)
            for agent_type, default in DEFAULT_CONCURRENCY.items()
        }
        orchestrator = OrchestratorConfig(
            concurrency=concurrency,
            health_check_interval_ms=_env_int("HEALTH_CHECK_INTERVAL_MS", 60_000),
            enable_scheduled_tasks=_env_bool("ENABLE_SCHEDULED_TASKS", True),
        )

        metrics = MetricsConfig(
            interval_ms=_env_int("METRICS_INTERVAL_MS", 60_000),
            history_size=_env_int("METRICS_HISTORY_SIZE", 1000),
            prefix=os.getenv("METRICS_PREFIX", "brewmaster"),
        )

        openai_config = None
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key:
            openai_config = OpenAIConfig(
                api_key=api_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                max_concurrent=_env_int("OPENAI_MAX_CONCURRENT", 10),
            )

        return cls(
            queue=queue,
            agents=agents,
            orchestrator=orchestrator,
            metrics=metrics,
            openai=openai_config,
            task_store_path=os.getenv("TASK_STORE_PATH", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
