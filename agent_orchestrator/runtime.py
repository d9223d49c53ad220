"""Application runtime composition helpers."""
from __future__ import annotations

import logging
from functools import lru_cache

from agent_orchestrator.agents.catalog import DEFAULT_AGENTS, register_default_handlers
from agent_orchestrator.agents.registry import HandlerRegistry
from agent_orchestrator.config import config
from agent_orchestrator.core.metrics import MetricsRecorder
from agent_orchestrator.orchestration.orchestrator import Orchestrator
from agent_orchestrator.services.llm_pool import LLMPool
from agent_orchestrator.services.task_store import InMemoryTaskStore, SQLiteTaskStore, TaskStore

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)


@lru_cache
def get_metrics() -> MetricsRecorder:
    return MetricsRecorder(
        interval_ms=config.metrics.interval_ms,
        history_size=config.metrics.history_size,
    )


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Every model named by an agent shares the configured endpoint
    if config.openai:
        models = {config.agents.model} | {spec.model for spec in DEFAULT_AGENTS if spec.model}
        for model in sorted(models):
            pool.register_openai(model, config.openai)

    return pool


@lru_cache
def get_handler_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    register_default_handlers(registry, get_llm_pool(), DEFAULT_AGENTS)
    return registry


@lru_cache
def get_task_store() -> TaskStore:
    if config.task_store_path:
        return SQLiteTaskStore(config.task_store_path)
    return InMemoryTaskStore()


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        store=get_task_store(),
        handlers=get_handler_registry(),
        agent_specs=DEFAULT_AGENTS,
        metrics=get_metrics(),
        queue_config=config.queue,
        agent_defaults=config.agents,
        settings=config.orchestrator,
    )
