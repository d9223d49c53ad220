"""Base agent definition used by the orchestrator."""
from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from agent_orchestrator.core.errors import ExecutionError, ValidationError
from agent_orchestrator.core.models import (
    AgentCapability,
    AgentConfig,
    AgentMemory,
    AgentMetrics,
    AgentResponse,
    AgentSnapshot,
    AgentStatus,
    ContextEntry,
    ExecutionContext,
    Task,
    utc_now,
)

logger = logging.getLogger(__name__)

SHORT_TERM_LIMIT = 100
CONTEXT_HISTORY_LIMIT = 50
RELEVANT_WINDOW = 10

TaskHandler = Callable[["Agent", Task, ExecutionContext], Awaitable[AgentResponse]]
RelevanceScorer = Callable[[Task, Sequence[ContextEntry]], float]


def same_type_relevance(base: float = 0.5, step: float = 0.1) -> RelevanceScorer:
    """Score a task higher the more prior context entries share its type."""

    def score(task: Task, history: Sequence[ContextEntry]) -> float:
        similar = sum(1 for entry in history if entry.task_type == task.type)
        return min(1.0, base + step * similar)

    return score


class Agent:
    """Typed worker identity: configuration, status, bounded memory and metrics.

    One instance exists per agent type. Several executors of the same pool may
    call :meth:`execute` concurrently; every mutation of status, memory and
    metrics happens under the agent's lock while the handler itself runs
    outside it.
    """

    def __init__(
        self,
        *,
        agent_type: str,
        name: str,
        description: str,
        config: AgentConfig,
        handlers: Mapping[str, TaskHandler],
        capabilities: Optional[List[AgentCapability]] = None,
        relevance_scorer: Optional[RelevanceScorer] = None,
    ) -> None:
        if not handlers:
            raise ValueError(f"Agent '{agent_type}' has no task handlers")
        self.id = str(uuid.uuid4())
        self.type = agent_type
        self.name = name
        self.description = description
        self.config = config
        self.capabilities = list(capabilities or [])
        self._handlers: Dict[str, TaskHandler] = dict(handlers)
        self._score_relevance = relevance_scorer or same_type_relevance()
        self._status = AgentStatus.ACTIVE
        self._memory = AgentMemory(short_term=OrderedDict())
        self._metrics = AgentMetrics()
        self._successes = 0
        self._in_flight = 0
        self._lock = asyncio.Lock()

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def task_types(self) -> List[str]:
        return sorted(self._handlers)

    def supports(self, task_type: str) -> bool:
        return task_type in self._handlers

    async def execute(self, task: Task, context: ExecutionContext) -> AgentResponse:
        """Run the handler registered for ``task.type`` and record the outcome.

        Raises :class:`ValidationError` for an unknown task type and
        :class:`ExecutionError` when the handler raises or reports failure.
        """
        handler = self._handlers.get(task.type)
        if handler is None:
            raise ValidationError(f"Agent '{self.type}' has no handler for task type '{task.type}'")

        started = time.monotonic()
        async with self._lock:
            self._in_flight += 1
            if self._status is not AgentStatus.INACTIVE:
                self._status = AgentStatus.PROCESSING
            self._update_context(task, context)

        logger.info(
            "Agent starting task",
            extra={"agent_id": self.id, "agent_type": self.type, "task_id": task.id, "task_type": task.type},
        )

        try:
            response = await handler(self, task, context)
            if not response.success:
                raise ExecutionError(response.error or "Handler reported failure", task_id=task.id)
        except asyncio.CancelledError:
            # Abandoned by a timeout or stall recovery; no await before re-raising.
            self._in_flight -= 1
            self._record(False, (time.monotonic() - started) * 1000)
            self._metrics.last_error = "Task execution cancelled"
            self._metrics.last_error_time = utc_now()
            if self._status is not AgentStatus.INACTIVE:
                self._status = AgentStatus.ERROR
            raise
        except Exception as exc:
            execution_time = (time.monotonic() - started) * 1000
            message = str(exc) or type(exc).__name__
            async with self._lock:
                self._in_flight -= 1
                self._record(False, execution_time)
                self._metrics.last_error = message
                self._metrics.last_error_time = utc_now()
                if self._status is not AgentStatus.INACTIVE:
                    self._status = AgentStatus.ERROR
            logger.error(
                "Agent failed task",
                extra={"agent_id": self.id, "task_id": task.id, "error": message, "execution_time": execution_time},
            )
            if isinstance(exc, ExecutionError) or not getattr(exc, "retryable", True):
                raise
            raise ExecutionError(message, task_id=task.id) from exc

        execution_time = (time.monotonic() - started) * 1000
        async with self._lock:
            self._in_flight -= 1
            self._record(True, execution_time)
            self._remember(
                f"task_{task.id}",
                {"result": response.data, "execution_time": execution_time, "timestamp": utc_now()},
            )
            if self._status is not AgentStatus.INACTIVE:
                self._status = AgentStatus.PROCESSING if self._in_flight else AgentStatus.ACTIVE

        logger.info(
            "Agent completed task",
            extra={"agent_id": self.id, "task_id": task.id, "execution_time": execution_time},
        )
        response.metadata = {**response.metadata, "execution_time": execution_time, "agent_id": self.id}
        return response

    # ── Memory ───────────────────────────────────────────────────────

    async def store_in_memory(self, kind: str, key: str, value: Any) -> None:
        async with self._lock:
            if kind == "short_term":
                self._remember(key, value)
            elif kind == "long_term":
                self._memory.long_term[key] = value
            else:
                raise ValueError(f"Unknown memory kind: {kind}")

    def get_from_memory(self, kind: str, key: str) -> Any:
        if kind == "short_term":
            return copy.deepcopy(self._memory.short_term.get(key))
        if kind == "long_term":
            return copy.deepcopy(self._memory.long_term.get(key))
        raise ValueError(f"Unknown memory kind: {kind}")

    def get_relevant_memory(self) -> Dict[str, Any]:
        """Recent short-term results, relevant context and all long-term facts."""
        recent_keys = list(self._memory.short_term)[-RELEVANT_WINDOW:]
        recent_context = [
            entry
            for entry in self._memory.context_history[-RELEVANT_WINDOW:]
            if entry.relevance > 0.5
        ]
        return copy.deepcopy(
            {
                "short_term": {key: self._memory.short_term[key] for key in recent_keys},
                "recent_context": recent_context,
                "long_term": self._memory.long_term,
            }
        )

    def _remember(self, key: str, value: Any) -> None:
        short_term = self._memory.short_term
        short_term.pop(key, None)
        short_term[key] = value
        while len(short_term) > SHORT_TERM_LIMIT:
            short_term.popitem(last=False)

    def _update_context(self, task: Task, context: ExecutionContext) -> None:
        history = self._memory.context_history
        history.append(
            ContextEntry(
                timestamp=context.timestamp,
                task_id=task.id,
                task_type=task.type,
                relevance=self._score_relevance(task, history),
                submitter_id=context.submitter_id,
                session_id=context.session_id,
            )
        )
        if len(history) > CONTEXT_HISTORY_LIMIT:
            del history[: len(history) - CONTEXT_HISTORY_LIMIT]

    # ── Metrics & status ─────────────────────────────────────────────

    def _record(self, success: bool, execution_time: float) -> None:
        metrics = self._metrics
        metrics.tasks_processed += 1
        if success:
            self._successes += 1
        metrics.success_rate = self._successes / metrics.tasks_processed * 100
        metrics.average_execution_time += (
            execution_time - metrics.average_execution_time
        ) / metrics.tasks_processed

    def get_metrics(self) -> AgentMetrics:
        return dataclasses.replace(self._metrics)

    def set_status(self, status: AgentStatus) -> None:
        previous = self._status
        self._status = status
        logger.info(
            "Agent status changed",
            extra={"agent_id": self.id, "agent_type": self.type, "from": previous.value, "to": status.value},
        )

    def is_healthy(self) -> bool:
        return self._status is AgentStatus.ACTIVE and self._metrics.success_rate > 50

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            id=self.id,
            type=self.type,
            name=self.name,
            description=self.description,
            status=self._status,
            capabilities=copy.deepcopy(self.capabilities),
            memory=copy.deepcopy(self._memory),
            config=dataclasses.replace(self.config),
            metrics=self.get_metrics(),
            healthy=self.is_healthy(),
        )
