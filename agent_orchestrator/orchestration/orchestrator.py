"""Orchestrator composing one worker pool and one agent per agent type."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from agent_orchestrator.agents.base import Agent, RelevanceScorer
from agent_orchestrator.agents.catalog import AgentSpec, build_agent
from agent_orchestrator.agents.registry import HandlerRegistry
from agent_orchestrator.config import AgentDefaults, OrchestratorConfig, QueueConfig
from agent_orchestrator.core.errors import (
    JobNotFoundError,
    NotInitializedError,
    StoreUnavailableError,
    ValidationError,
)
from agent_orchestrator.core.metrics import MetricsRecorder
from agent_orchestrator.core.models import (
    AgentMetrics,
    AgentSnapshot,
    AgentStatus,
    ExecutionContext,
    JobState,
    OrchestratorStats,
    QueueStats,
    RetryPolicy,
    SystemHealth,
    Task,
    TaskPriority,
    TaskStatus,
    code_to_priority,
    utc_now,
)
from agent_orchestrator.core.queue import Job, JobContext, WorkerPool
from agent_orchestrator.services.task_store import TaskQuery, TaskStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_JOB_TO_TASK_STATUS = {
    JobState.WAITING: TaskStatus.PENDING,
    JobState.ACTIVE: TaskStatus.PROCESSING,
    JobState.COMPLETED: TaskStatus.COMPLETED,
    JobState.FAILED: TaskStatus.FAILED,
}


@dataclass(slots=True)
class RecurringTaskSpec:
    agent_type: str
    task_type: str
    cron: str
    input: Dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM


DEFAULT_RECURRING_TASKS: List[RecurringTaskSpec] = [
    RecurringTaskSpec(
        agent_type="compliance",
        task_type="monitor_license_status",
        cron="0 9 * * *",  # daily 09:00
        input={"notificationThresholds": {"critical": 30, "warning": 90}},
        priority=TaskPriority.HIGH,
    ),
    RecurringTaskSpec(
        agent_type="inventory_intelligence",
        task_type="assess_stock_risks",
        cron="0 8 * * 1",  # Mondays 08:00
        input={"riskTolerance": {"stockout": 0.05, "overstock": 0.15}},
    ),
    RecurringTaskSpec(
        agent_type="financial_operations",
        task_type="analyze_financial_performance",
        cron="0 7 1 * *",  # 1st of the month 07:00
        input={"period": "1 month"},
    ),
]


def calculate_overall_health(
    agents: Mapping[str, bool],
    queues: Mapping[str, bool],
    database: bool,
) -> str:
    """Three-tier health: an unreachable store is always unhealthy."""
    if not database:
        return UNHEALTHY
    agent_ratio = sum(agents.values()) / len(agents) if agents else 1.0
    queue_ratio = sum(queues.values()) / len(queues) if queues else 1.0
    if agent_ratio == 1 and queue_ratio == 1:
        return HEALTHY
    if agent_ratio >= 0.5 and queue_ratio >= 0.5:
        return DEGRADED
    return UNHEALTHY


class Orchestrator:
    """Own the per-type agents and pools, route submissions and watch health.

    Agents and pools live in maps owned by this instance; nothing is
    registered at module level. Execution-time failures never reach the
    submitter: they are written to the task record and the agent's metrics.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        handlers: HandlerRegistry,
        agent_specs: Sequence[AgentSpec],
        metrics: MetricsRecorder,
        queue_config: Optional[QueueConfig] = None,
        agent_defaults: Optional[AgentDefaults] = None,
        settings: Optional[OrchestratorConfig] = None,
        recurring_tasks: Optional[Sequence[RecurringTaskSpec]] = None,
        relevance_scorer: Optional[RelevanceScorer] = None,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._specs = list(agent_specs)
        self._metrics = metrics
        self._queue_config = queue_config or QueueConfig()
        self._agent_defaults = agent_defaults or AgentDefaults()
        self._settings = settings or OrchestratorConfig()
        self._recurring_tasks = list(DEFAULT_RECURRING_TASKS if recurring_tasks is None else recurring_tasks)
        self._relevance_scorer = relevance_scorer
        self._agents: Dict[str, Agent] = {}
        self._pools: Dict[str, WorkerPool] = {}
        self._health_task: Optional[asyncio.Task[None]] = None
        self._last_health: Optional[SystemHealth] = None
        self._initialized = False
        self._shutdown = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def last_health(self) -> Optional[SystemHealth]:
        return self._last_health

    def agent_types(self) -> List[str]:
        return list(self._agents)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Build every agent and pool, then start schedules and health checks.

        Any failure tears down what was built and propagates.
        """
        if self._initialized:
            return
        logger.info("Initializing orchestrator", extra={"agent_types": [spec.agent_type for spec in self._specs]})
        try:
            await self._store.initialize()
            if not await self._store.check_health():
                raise StoreUnavailableError("Task store failed its health check")

            for spec in self._specs:
                self._add_agent(spec)

            if self._settings.enable_scheduled_tasks:
                self._setup_scheduled_tasks()

            self._health_task = asyncio.create_task(self._monitor_health(), name="health-monitor")
        except BaseException:
            logger.exception("Orchestrator initialization failed")
            await self._teardown()
            raise

        self._initialized = True
        logger.info("Orchestrator initialized", extra={"agents": len(self._agents)})

    def _add_agent(self, spec: AgentSpec) -> None:
        agent = build_agent(spec, self._handlers, self._agent_defaults, self._relevance_scorer)
        queue = self._queue_config
        pool = WorkerPool(
            spec.agent_type,
            defaults=RetryPolicy(
                max_attempts=queue.attempts,
                backoff_ms=queue.backoff_ms,
                timeout_ms=queue.timeout_ms,
            ),
            stall_interval_ms=queue.stall_interval_ms,
            keep_completed=queue.keep_completed,
            keep_failed=queue.keep_failed,
            metrics=self._metrics,
        )
        self._agents[spec.agent_type] = agent
        self._pools[spec.agent_type] = pool
        self._metrics.register_agent_type(spec.agent_type)
        pool.register_executor(
            self._processor(agent),
            self._settings.concurrency.get(spec.agent_type, 1),
            on_failure=self._failure_hook(agent),
        )
        logger.info(
            "Agent initialized",
            extra={"agent_type": spec.agent_type, "agent_id": agent.id, "concurrency": pool.concurrency},
        )

    def _setup_scheduled_tasks(self) -> None:
        for recurring in self._recurring_tasks:
            pool = self._pools.get(recurring.agent_type)
            agent = self._agents.get(recurring.agent_type)
            if pool is None or agent is None or not agent.supports(recurring.task_type):
                logger.warning(
                    "Skipping scheduled task for unavailable agent or task type",
                    extra={"agent_type": recurring.agent_type, "task_type": recurring.task_type},
                )
                continue
            try:
                pool.add_recurring(recurring.task_type, dict(recurring.input), recurring.cron, priority=recurring.priority)
            except ValidationError:
                logger.exception(
                    "Failed to schedule recurring task",
                    extra={"agent_type": recurring.agent_type, "task_type": recurring.task_type},
                )

    async def shutdown(self) -> None:
        """Stop health checks, drain every pool, then release the store. Idempotent."""
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("Shutting down orchestrator")
        await self._teardown()
        self._initialized = False
        logger.info("Orchestrator shutdown complete")

    async def _teardown(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        grace_ms = self._queue_config.shutdown_grace_ms
        results = await asyncio.gather(
            *(pool.close(grace_ms) for pool in self._pools.values()),
            return_exceptions=True,
        )
        for name, result in zip(list(self._pools), results):
            if isinstance(result, BaseException):
                logger.error("Failed to close queue", extra={"queue": name, "error": repr(result)})

        try:
            await self._store.close()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to close task store")

    # ── Submission ───────────────────────────────────────────────────

    async def execute_task(
        self,
        agent_type: str,
        task_type: str,
        input: Mapping[str, Any],
        priority: Optional[TaskPriority] = None,
        submitter_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> str:
        """Persist a PENDING task, queue it and return its id without waiting."""
        return await self._submit(
            agent_type,
            task_type,
            input,
            priority,
            submitter_id=submitter_id,
            session_id=session_id,
            retry_policy=retry_policy,
        )

    async def schedule_task(
        self,
        agent_type: str,
        task_type: str,
        input: Mapping[str, Any],
        delay_ms: int,
        priority: Optional[TaskPriority] = None,
        submitter_id: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> str:
        """Like :meth:`execute_task`, but the job becomes visible after ``delay_ms``."""
        if delay_ms < 0:
            raise ValidationError("delay_ms must not be negative")
        return await self._submit(
            agent_type,
            task_type,
            input,
            priority,
            delay_ms=delay_ms,
            submitter_id=submitter_id,
            session_id=session_id,
            retry_policy=retry_policy,
        )

    async def schedule_recurring_task(
        self,
        agent_type: str,
        task_type: str,
        input: Mapping[str, Any],
        cron: str,
        priority: Optional[TaskPriority] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> str:
        """Register a calendar rule; every firing becomes its own task. Returns the repeat key."""
        pool, _ = self._validate(agent_type, task_type, input)
        key = pool.add_recurring(
            task_type,
            dict(input),
            cron,
            retry_policy,
            priority=TaskPriority(priority or TaskPriority.MEDIUM),
        )
        logger.info(
            "Recurring task scheduled",
            extra={"agent_type": agent_type, "task_type": task_type, "cron": cron, "repeat_key": key},
        )
        return key

    async def remove_recurring_task(self, agent_type: str, repeat_key: str) -> bool:
        return self._pool(agent_type).remove_recurring(repeat_key)

    def recurring_tasks(self) -> Dict[str, List[Dict[str, Any]]]:
        return {agent_type: pool.recurring() for agent_type, pool in self._pools.items()}

    async def _submit(
        self,
        agent_type: str,
        task_type: str,
        input: Mapping[str, Any],
        priority: Optional[TaskPriority],
        *,
        delay_ms: int = 0,
        submitter_id: Optional[str] = None,
        session_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> str:
        pool, _ = self._validate(agent_type, task_type, input)
        task = Task(
            id=str(uuid.uuid4()),
            type=task_type,
            agent_type=agent_type,
            input=dict(input),
            priority=TaskPriority(priority or TaskPriority.MEDIUM),
            submitter_id=submitter_id,
            session_id=session_id,
        )

        # The record exists before the job so an executor never sees a missing task.
        await self._store.create_task(task)
        try:
            await pool.enqueue(
                task_type,
                task.input,
                task.priority,
                retry_policy,
                delay_ms,
                task_id=task.id,
                submitter_id=submitter_id,
                session_id=session_id,
            )
        except Exception as exc:
            await self._record_task(
                task.id,
                status=TaskStatus.FAILED,
                error=f"Enqueue failed: {exc}",
                completed_at=utc_now(),
            )
            raise

        logger.info(
            "Task submitted",
            extra={
                "task_id": task.id,
                "agent_type": agent_type,
                "task_type": task_type,
                "priority": task.priority.value,
                "delay_ms": delay_ms,
                "submitter_id": submitter_id,
            },
        )
        return task.id

    def _validate(self, agent_type: str, task_type: str, input: Any) -> tuple[WorkerPool, Agent]:
        pool = self._pool(agent_type)
        agent = self._agents[agent_type]
        if not isinstance(input, Mapping):
            raise ValidationError("Task input must be a mapping")
        if not agent.supports(task_type):
            raise ValidationError(f"Unknown task type '{task_type}' for agent '{agent_type}'")
        return pool, agent

    # ── Execution ────────────────────────────────────────────────────

    def _processor(self, agent: Agent):
        async def process(job: Job, context: JobContext) -> Dict[str, Any]:
            return await self._process_job(agent, job, context)

        return process

    def _failure_hook(self, agent: Agent):
        async def on_failure(job: Job, exc: BaseException, will_retry: bool) -> None:
            await self._on_job_failure(agent, job, exc, will_retry)

        return on_failure

    async def _process_job(self, agent: Agent, job: Job, context: JobContext) -> Dict[str, Any]:
        task = self._task_from_job(job)
        if job.repeat_key is not None:
            await self._ensure_recorded(task)

        await self._record_task(
            job.task_id,
            status=TaskStatus.ASSIGNED,
            assigned_agent_id=agent.id,
            attempts=context.attempt,
        )
        await self._record_task(job.task_id, status=TaskStatus.PROCESSING, started_at=utc_now())

        response = await agent.execute(
            task,
            ExecutionContext(
                task_id=job.task_id,
                submitter_id=job.submitter_id,
                session_id=job.session_id,
                attempt=context.attempt,
                job=context,
            ),
        )
        output = dict(response.data or {})
        await self._record_task(
            job.task_id,
            status=TaskStatus.COMPLETED,
            output=output,
            error=None,
            completed_at=utc_now(),
        )
        return output

    async def _on_job_failure(self, agent: Agent, job: Job, exc: BaseException, will_retry: bool) -> None:
        if will_retry:
            await self._record_task(job.task_id, status=TaskStatus.PENDING, error=job.failed_reason)
            return
        await self._record_task(
            job.task_id,
            status=TaskStatus.FAILED,
            error=job.failed_reason,
            attempts=job.attempts_made,
            completed_at=utc_now(),
        )
        logger.error(
            "Task failed permanently",
            extra={
                "task_id": job.task_id,
                "agent_type": agent.type,
                "error": job.failed_reason,
                "attempts": job.attempts_made,
            },
        )

    def _task_from_job(self, job: Job) -> Task:
        return Task(
            id=job.task_id,
            type=job.task_type,
            agent_type=job.queue_name,
            input=dict(job.input),
            priority=code_to_priority(job.priority),
            status=_JOB_TO_TASK_STATUS[job.state],
            output=job.result if job.state is JobState.COMPLETED else None,
            error=job.failed_reason,
            attempts=job.attempts_made,
            submitter_id=job.submitter_id,
            session_id=job.session_id,
            created_at=job.created_at,
            started_at=job.processed_at,
            completed_at=job.finished_at if job.state in (JobState.COMPLETED, JobState.FAILED) else None,
        )

    async def _ensure_recorded(self, task: Task) -> None:
        try:
            if await self._store.get_task(task.id) is None:
                task.status = TaskStatus.PENDING
                await self._store.create_task(task)
        except StoreUnavailableError as exc:
            logger.warning("Could not record scheduled task", extra={"task_id": task.id, "error": str(exc)})

    async def _record_task(self, task_id: str, **fields: Any) -> None:
        # The job is the scheduling truth; a store outage only costs durability.
        try:
            await self._store.update_task(task_id, **fields)
        except StoreUnavailableError as exc:
            logger.warning(
                "Task store update failed",
                extra={"task_id": task_id, "fields": sorted(fields), "error": str(exc)},
            )

    # ── Introspection ────────────────────────────────────────────────

    async def get_task_status(self, task_id: str) -> Optional[Task]:
        try:
            task = await self._store.get_task(task_id)
        except StoreUnavailableError:
            logger.warning("Task store unavailable, reading task from queue", extra={"task_id": task_id})
            task = None
        if task is not None:
            return task
        for pool in self._pools.values():
            jobs = pool.find_jobs(task_id)
            if jobs:
                return self._task_from_job(jobs[-1])
        return None

    async def get_task_history(self, query: Optional[TaskQuery] = None) -> List[Task]:
        query = query or TaskQuery()
        try:
            return await self._store.query_tasks(query)
        except StoreUnavailableError:
            logger.warning("Task store unavailable, reading history from queues")
        pools = self._pools.values()
        if query.agent_type is not None:
            pools = [self._pools[query.agent_type]] if query.agent_type in self._pools else []
        tasks = [
            task
            for pool in pools
            for task in (self._task_from_job(job) for job in pool.jobs())
            if query.matches(task)
        ]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks[query.offset : query.offset + query.limit]

    def get_agent_status(self, agent_type: Optional[str] = None) -> Union[AgentSnapshot, Dict[str, AgentSnapshot]]:
        if agent_type is not None:
            return self._agent(agent_type).snapshot()
        return {name: agent.snapshot() for name, agent in self._agents.items()}

    def get_agent_metrics(self, agent_type: Optional[str] = None) -> Union[AgentMetrics, Dict[str, AgentMetrics]]:
        if agent_type is not None:
            return self._agent(agent_type).get_metrics()
        return {name: agent.get_metrics() for name, agent in self._agents.items()}

    def get_queue_stats(self, agent_type: Optional[str] = None) -> Union[QueueStats, Dict[str, QueueStats]]:
        if agent_type is not None:
            return self._pool(agent_type).stats()
        return {name: pool.stats() for name, pool in self._pools.items()}

    async def get_orchestrator_stats(self) -> OrchestratorStats:
        try:
            database = await self._store.check_health()
        except Exception:  # noqa: BLE001
            logger.exception("Task store health check failed")
            database = False

        agents = {name: agent.is_healthy() for name, agent in self._agents.items()}
        queues = {name: pool.is_responsive() for name, pool in self._pools.items()}
        return OrchestratorStats(
            agents={name: agent.get_metrics() for name, agent in self._agents.items()},
            queues={name: pool.stats() for name, pool in self._pools.items()},
            system_health=SystemHealth(
                overall=calculate_overall_health(agents, queues, database),
                agents=agents,
                queues=queues,
                database=database,
            ),
        )

    async def _monitor_health(self) -> None:
        interval = self._settings.health_check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                stats = await self.get_orchestrator_stats()
            except Exception:  # noqa: BLE001
                logger.exception("Health check failed")
                continue
            health = stats.system_health
            self._last_health = health
            if health.overall != HEALTHY:
                logger.warning(
                    "System health degraded",
                    extra={
                        "overall": health.overall,
                        "unhealthy_agents": [name for name, ok in health.agents.items() if not ok],
                        "unresponsive_queues": [name for name, ok in health.queues.items() if not ok],
                        "database": health.database,
                    },
                )

    # ── Control ──────────────────────────────────────────────────────

    async def pause_agent(self, agent_type: str) -> None:
        """Mark the agent INACTIVE and pause its pool; both or neither."""
        agent = self._agent(agent_type)
        pool = self._pools[agent_type]
        previous = agent.status
        agent.set_status(AgentStatus.INACTIVE)
        try:
            await pool.pause()
        except Exception:
            agent.set_status(previous)
            raise
        logger.info("Agent paused", extra={"agent_type": agent_type})

    async def resume_agent(self, agent_type: str) -> None:
        agent = self._agent(agent_type)
        pool = self._pools[agent_type]
        previous = agent.status
        if previous is AgentStatus.INACTIVE:
            agent.set_status(AgentStatus.ACTIVE)
        try:
            await pool.resume()
        except Exception:
            agent.set_status(previous)
            raise
        logger.info("Agent resumed", extra={"agent_type": agent_type})

    async def retry_task(self, task_id: str, agent_type: Optional[str] = None) -> None:
        """Resubmit the failed job behind ``task_id`` and reset the task to PENDING."""
        pools = [self._pool(agent_type)] if agent_type is not None else list(self._pools.values())
        jobs = [job for pool in pools for job in pool.find_jobs(task_id)]
        if not jobs:
            raise JobNotFoundError(f"No job found for task {task_id}")
        failed = [job for job in jobs if job.state is JobState.FAILED]
        job = failed[-1] if failed else jobs[-1]
        await self._pools[job.queue_name].retry(job.id)
        await self._record_task(
            task_id,
            status=TaskStatus.PENDING,
            output=None,
            error=None,
            attempts=0,
            completed_at=None,
        )
        logger.info("Task retry initiated", extra={"task_id": task_id, "agent_type": job.queue_name})

    async def clear_queue(self, agent_type: str, state: Optional[JobState] = None) -> int:
        pool = self._pool(agent_type)
        waiting = [job.task_id for job in pool.jobs(JobState.WAITING)] if state in (None, JobState.WAITING) else []
        cleared = await pool.clear(state)
        for task_id in waiting:
            await self._record_removed(task_id)
        return cleared

    async def remove_job(self, agent_type: str, job_id: str) -> None:
        pool = self._pool(agent_type)
        job = pool.get_job(job_id)
        was_waiting = job.state is JobState.WAITING
        await pool.remove(job_id)
        if was_waiting:
            await self._record_removed(job.task_id)

    async def _record_removed(self, task_id: str) -> None:
        # The job is gone and will never run, so its record must become terminal.
        await self._record_task(
            task_id,
            status=TaskStatus.FAILED,
            error="Removed from queue",
            completed_at=utc_now(),
        )

    # ── Lookup ───────────────────────────────────────────────────────

    def _agent(self, agent_type: str) -> Agent:
        self._ensure_initialized()
        agent = self._agents.get(agent_type)
        if agent is None:
            raise ValidationError(f"Unknown agent type: {agent_type}")
        return agent

    def _pool(self, agent_type: str) -> WorkerPool:
        self._ensure_initialized()
        pool = self._pools.get(agent_type)
        if pool is None:
            raise ValidationError(f"Unknown agent type: {agent_type}")
        return pool

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Orchestrator is not initialized")
