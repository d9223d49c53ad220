"""LLM client pool for shared model access with concurrency control."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List

from openai import AsyncOpenAI

from agent_orchestrator.config import OpenAIConfig

logger = logging.getLogger(__name__)


class LLMPool:
    """Manages shared LLM clients with concurrency limiting.

    Clients are keyed by model name. Several model names may share one
    underlying client; each name still gets its own concurrency budget.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, Callable[[], Any]] = {}
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def register_openai(self, model_name: str, config: OpenAIConfig) -> None:
        """Register an OpenAI-compatible endpoint; the client is built on first use."""

        def build() -> AsyncOpenAI:
            return AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)

        self._factories[model_name] = build
        self._semaphores[model_name] = asyncio.Semaphore(config.max_concurrent)

    def register_client(self, model_name: str, client: Any, max_concurrent: int = 10) -> None:
        """Register an already constructed client exposing ``chat.completions.create``."""
        self._clients[model_name] = client
        self._semaphores[model_name] = asyncio.Semaphore(max_concurrent)

    def models(self) -> List[str]:
        return sorted(self._semaphores)

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._semaphores:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        async with self._semaphores[model_name]:
            client = self._clients.get(model_name)
            if client is None:
                client = self._factories[model_name]()
                self._clients[model_name] = client
                logger.info("LLM client initialised", extra={"model": model_name})
            yield client

    async def close(self) -> None:
        # Only clients built from a factory are owned by the pool.
        for model_name in list(self._factories):
            client = self._clients.pop(model_name, None)
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close LLM client", extra={"model": model_name})
