"""Per-agent-type worker pool: a priority queue plus bounded concurrent executors."""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from croniter import croniter

from agent_orchestrator.core.errors import (
    JobNotFoundError,
    JobStateError,
    PoolClosedError,
    StalledJobError,
    TaskTimeoutError,
    ValidationError,
)
from agent_orchestrator.core.metrics import MetricsRecorder
from agent_orchestrator.core.models import (
    JobState,
    QueueStats,
    RetryPolicy,
    TaskPriority,
    priority_to_code,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_TRANSITIONS = 64


@dataclass(slots=True, eq=False)
class Job:
    """Queue-level wrapper around a task. Owned by exactly one pool."""

    id: str
    task_id: str
    task_type: str
    queue_name: str
    input: Dict[str, Any]
    priority: int
    policy: RetryPolicy
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None
    repeat_key: Optional[str] = None
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stall_count: int = 0
    progress: int = 0
    available_at: float = 0.0
    heartbeat_at: float = 0.0
    result: Any = None
    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    transitions: List[JobState] = field(default_factory=lambda: [JobState.WAITING])
    run_token: int = 0
    seq: int = -1

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts


class JobContext:
    """Handed to the process function; carries cancellation and progress."""

    def __init__(self, job: Job, token: int) -> None:
        self.job = job
        self._token = token
        self._cancelled = asyncio.Event()

    @property
    def attempt(self) -> int:
        return self.job.attempts_made + 1

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def progress(self, value: int) -> None:
        """Report progress; also renews the job's liveness heartbeat."""
        if self.job.run_token != self._token:
            return
        self.job.progress = max(0, min(100, value))
        self.job.heartbeat_at = asyncio.get_running_loop().time()


ProcessFn = Callable[[Job, JobContext], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException, bool], Awaitable[None]]


@dataclass(slots=True)
class _Recurring:
    key: str
    task_type: str
    input: Dict[str, Any]
    cron: str
    priority: TaskPriority
    policy: RetryPolicy
    schedule: Any
    next_run: Optional[datetime] = None
    handle: Optional[asyncio.TimerHandle] = None


class _Superseded(Exception):
    """Raised inside an executor whose job was taken over by stall recovery."""


class WorkerPool:
    """Priority-ordered holding area for the jobs of one agent type.

    Jobs are dequeued by priority code (1 first) and, within a priority, in
    submission order. At most ``concurrency`` jobs run at once. Failed jobs
    are retried with exponential backoff until ``max_attempts`` is reached.
    An active job whose executor stops renewing its heartbeat for longer than
    the stall interval is returned to the queue once for free; a second stall
    counts as a failed attempt.
    """

    def __init__(
        self,
        name: str,
        *,
        defaults: Optional[RetryPolicy] = None,
        stall_interval_ms: int = 30_000,
        keep_completed: int = 100,
        keep_failed: int = 50,
        metrics: Optional[MetricsRecorder] = None,
    ) -> None:
        self.name = name
        self.defaults = defaults or RetryPolicy()
        self.stall_interval_ms = stall_interval_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._metrics = metrics
        self._jobs: Dict[str, Job] = {}
        self._ready: List[Tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._completed: Deque[str] = deque()
        self._failed: Deque[str] = deque()
        self._recurring: Dict[str, _Recurring] = {}
        self._running: Dict[str, asyncio.Future[Any]] = {}
        self._workers: Dict[int, asyncio.Task[None]] = {}
        self._process_fn: Optional[ProcessFn] = None
        self._on_failure: Optional[FailureHook] = None
        self._concurrency = 0
        self._stall_monitor: Optional[asyncio.Task[None]] = None
        self._wakeup = asyncio.Event()
        self._paused = False
        self._closing = False
        self._closed = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def closed(self) -> bool:
        return self._closing or self._closed

    @property
    def concurrency(self) -> int:
        return self._concurrency

    # ── Submission ───────────────────────────────────────────────────

    async def enqueue(
        self,
        task_type: str,
        input: Dict[str, Any],
        priority: TaskPriority = TaskPriority.MEDIUM,
        retry_policy: Optional[RetryPolicy] = None,
        delay_ms: int = 0,
        *,
        task_id: Optional[str] = None,
        submitter_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Add a job and return its task id without waiting for execution."""
        self._ensure_open()
        job = self._add_job(
            task_type,
            input,
            priority,
            retry_policy,
            delay_ms,
            task_id=task_id,
            submitter_id=submitter_id,
            session_id=session_id,
        )
        logger.info(
            "Task added to queue",
            extra={
                "queue": self.name,
                "task_id": job.task_id,
                "job_id": job.id,
                "task_type": task_type,
                "priority": job.priority,
                "delay_ms": delay_ms,
            },
        )
        return job.task_id

    def _add_job(
        self,
        task_type: str,
        input: Dict[str, Any],
        priority: TaskPriority,
        retry_policy: Optional[RetryPolicy],
        delay_ms: int,
        *,
        task_id: Optional[str] = None,
        submitter_id: Optional[str] = None,
        session_id: Optional[str] = None,
        repeat_key: Optional[str] = None,
    ) -> Job:
        if delay_ms < 0:
            raise ValidationError("delay_ms must not be negative")
        job = Job(
            id=str(uuid.uuid4()),
            task_id=task_id or str(uuid.uuid4()),
            task_type=task_type,
            queue_name=self.name,
            input=input,
            priority=priority_to_code(priority),
            policy=retry_policy or self.defaults,
            submitter_id=submitter_id,
            session_id=session_id,
            repeat_key=repeat_key,
        )
        self._jobs[job.id] = job
        self._schedule(job, delay_ms)
        self._report_queue_length()
        return job

    def _schedule(self, job: Job, delay_ms: int) -> None:
        loop = asyncio.get_running_loop()
        job.available_at = loop.time() + delay_ms / 1000
        if delay_ms > 0:
            self._timers[job.id] = loop.call_later(delay_ms / 1000, self._promote, job.id)
        else:
            self._push_ready(job)

    def _promote(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.state is JobState.WAITING:
            self._push_ready(job)

    def _push_ready(self, job: Job) -> None:
        job.seq = next(self._seq)
        heapq.heappush(self._ready, (job.priority, job.seq, job.id))
        self._wakeup.set()

    def _pop_ready(self) -> Optional[Job]:
        while self._ready:
            _, seq, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            # Entries left behind by remove/retry/requeue are skipped.
            if job is None or job.seq != seq or job.state is not JobState.WAITING:
                continue
            job.seq = -1
            return job
        return None

    # ── Recurring jobs ───────────────────────────────────────────────

    def add_recurring(
        self,
        task_type: str,
        input: Dict[str, Any],
        cron: str,
        retry_policy: Optional[RetryPolicy] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
    ) -> str:
        """Fire a fresh job on every occurrence of ``cron``; returns the repeat key."""
        self._ensure_open()
        if not croniter.is_valid(cron):
            raise ValidationError(f"Invalid cron expression: {cron!r}")

        key = f"{self.name}:{task_type}:{cron}"
        if key in self._recurring:
            return key

        recurring = _Recurring(
            key=key,
            task_type=task_type,
            input=input,
            cron=cron,
            priority=priority,
            policy=retry_policy or self.defaults,
            schedule=croniter(cron, datetime.now(timezone.utc)),
        )
        self._recurring[key] = recurring
        self._arm(recurring)
        logger.info(
            "Recurring task scheduled",
            extra={"queue": self.name, "task_type": task_type, "cron": cron},
        )
        return key

    def remove_recurring(self, key: str) -> bool:
        recurring = self._recurring.pop(key, None)
        if recurring is None:
            return False
        if recurring.handle is not None:
            recurring.handle.cancel()
        return True

    def recurring(self) -> List[Dict[str, Any]]:
        return [
            {
                "key": rec.key,
                "task_type": rec.task_type,
                "cron": rec.cron,
                "next_run": rec.next_run.isoformat() if rec.next_run else None,
            }
            for rec in self._recurring.values()
        ]

    def _arm(self, recurring: _Recurring) -> None:
        loop = asyncio.get_running_loop()
        recurring.next_run = recurring.schedule.get_next(datetime)
        delay = max(0.0, (recurring.next_run - datetime.now(timezone.utc)).total_seconds())
        recurring.handle = loop.call_later(delay, self._fire, recurring.key)

    def _fire(self, key: str) -> None:
        recurring = self._recurring.get(key)
        if recurring is None or self.closed:
            return
        job = self._add_job(
            recurring.task_type,
            dict(recurring.input),
            recurring.priority,
            recurring.policy,
            0,
            repeat_key=key,
        )
        logger.info(
            "Recurring task fired",
            extra={"queue": self.name, "task_id": job.task_id, "repeat_key": key},
        )
        self._arm(recurring)

    # ── Execution ────────────────────────────────────────────────────

    def register_executor(
        self,
        process_fn: ProcessFn,
        concurrency: int = 1,
        *,
        on_failure: Optional[FailureHook] = None,
    ) -> None:
        """Bind the function run for every job; start ``concurrency`` executors.

        ``on_failure`` is awaited after each failed attempt with the job, the
        error and whether the job will be retried.
        """
        self._ensure_open()
        if self._process_fn is not None:
            raise RuntimeError(f"Executor already registered for queue '{self.name}'")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._process_fn = process_fn
        self._on_failure = on_failure
        self._concurrency = concurrency
        for slot in range(concurrency):
            self._spawn_worker(slot)
        self._stall_monitor = asyncio.create_task(
            self._monitor_stalls(), name=f"{self.name}-stall-monitor"
        )
        logger.info(
            "Processor registered",
            extra={"queue": self.name, "concurrency": concurrency},
        )

    def _spawn_worker(self, slot: int) -> None:
        task = asyncio.create_task(self._worker_loop(), name=f"{self.name}-worker-{slot}")
        task.add_done_callback(lambda t, s=slot: self._on_worker_exit(s, t))
        self._workers[slot] = task

    def _on_worker_exit(self, slot: int, task: asyncio.Task[None]) -> None:
        if self._closing:
            return
        if task.cancelled():
            logger.warning("Executor cancelled, restarting", extra={"queue": self.name, "slot": slot})
        else:
            exc = task.exception()
            logger.error(
                "Executor crashed, restarting",
                extra={"queue": self.name, "slot": slot, "error": repr(exc)},
            )
        self._spawn_worker(slot)

    async def _worker_loop(self) -> None:
        while True:
            job = await self._next_job()
            if job is None:
                return
            await self._execute(job)

    async def _next_job(self) -> Optional[Job]:
        while True:
            if self._closing:
                return None
            if not self._paused:
                job = self._pop_ready()
                if job is not None:
                    return job
            self._wakeup.clear()
            await self._wakeup.wait()

    async def _execute(self, job: Job) -> None:
        assert self._process_fn is not None
        loop = asyncio.get_running_loop()
        job.run_token += 1
        token = job.run_token
        self._transition(job, JobState.ACTIVE)
        job.processed_at = utc_now()
        job.progress = 0
        job.heartbeat_at = started = loop.time()
        context = JobContext(job, token)

        logger.info(
            "Processing job started",
            extra={
                "queue": self.name,
                "job_id": job.id,
                "task_id": job.task_id,
                "task_type": job.task_type,
                "attempt": job.attempts_made + 1,
                "max_attempts": job.max_attempts,
            },
        )

        handler = asyncio.ensure_future(self._process_fn(job, context))
        handler.add_done_callback(_consume_outcome)
        self._running[job.id] = handler
        try:
            result = await self._await_handler(job, handler, context, token, started)
        except asyncio.CancelledError:
            handler.cancel()
            raise
        except _Superseded:
            return
        except Exception as exc:  # noqa: BLE001
            if job.run_token != token:
                return
            await self._handle_failure(job, exc, _elapsed_ms(loop, started))
        else:
            if job.run_token != token:
                return
            self._handle_success(job, result, _elapsed_ms(loop, started))
        finally:
            if self._running.get(job.id) is handler:
                del self._running[job.id]

    async def _await_handler(
        self,
        job: Job,
        handler: asyncio.Future[Any],
        context: JobContext,
        token: int,
        started: float,
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = started + job.policy.timeout_ms / 1000
        heartbeat = self.stall_interval_ms / 2000
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                context.cancel()
                handler.cancel()
                raise TaskTimeoutError(
                    f"Job {job.id} timed out after {job.policy.timeout_ms} ms",
                    task_id=job.task_id,
                )
            done, _ = await asyncio.wait({handler}, timeout=min(heartbeat, remaining))
            if job.run_token != token:
                raise _Superseded()
            if done:
                return handler.result()
            job.heartbeat_at = loop.time()

    def _handle_success(self, job: Job, result: Any, duration_ms: float) -> None:
        job.attempts_made += 1
        job.result = result
        job.failed_reason = None
        job.progress = 100
        job.finished_at = utc_now()
        self._transition(job, JobState.COMPLETED)
        self._retain(self._completed, job, self.keep_completed)
        if self._metrics is not None:
            self._metrics.record_agent_task(self.name, duration_ms, True)
        self._report_queue_length()
        logger.info(
            "Job processing completed",
            extra={
                "queue": self.name,
                "job_id": job.id,
                "task_id": job.task_id,
                "duration_ms": duration_ms,
                "attempts": job.attempts_made,
            },
        )

    async def _handle_failure(self, job: Job, exc: BaseException, duration_ms: float) -> None:
        job.attempts_made += 1
        job.failed_reason = str(exc) or type(exc).__name__
        retryable = getattr(exc, "retryable", True)
        will_retry = retryable and job.attempts_made < job.max_attempts

        if will_retry:
            delay_ms = job.policy.backoff_for(job.attempts_made)
            self._transition(job, JobState.WAITING)
            if not self._closing:
                self._schedule(job, delay_ms)
            logger.warning(
                "Job processing failed, will retry",
                extra={
                    "queue": self.name,
                    "job_id": job.id,
                    "task_id": job.task_id,
                    "error": job.failed_reason,
                    "attempt": job.attempts_made,
                    "max_attempts": job.max_attempts,
                    "delay_ms": delay_ms,
                },
            )
        else:
            job.finished_at = utc_now()
            self._transition(job, JobState.FAILED)
            self._retain(self._failed, job, self.keep_failed)
            logger.error(
                "Job failed",
                extra={
                    "queue": self.name,
                    "job_id": job.id,
                    "task_id": job.task_id,
                    "error": job.failed_reason,
                    "attempts": job.attempts_made,
                },
            )

        if self._metrics is not None:
            self._metrics.record_agent_task(self.name, duration_ms, False)
        self._report_queue_length()

        if self._on_failure is not None:
            try:
                await self._on_failure(job, exc, will_retry)
            except Exception:  # noqa: BLE001
                logger.exception("Failure hook raised", extra={"queue": self.name, "job_id": job.id})

    # ── Stall detection ──────────────────────────────────────────────

    async def _monitor_stalls(self) -> None:
        while True:
            await asyncio.sleep(self.stall_interval_ms / 2000)
            try:
                await self.check_stalled()
            except Exception:  # noqa: BLE001
                logger.exception("Stall check failed", extra={"queue": self.name})

    async def check_stalled(self) -> List[str]:
        """Requeue active jobs whose heartbeat is older than the stall interval."""
        loop = asyncio.get_running_loop()
        now = loop.time()
        window = self.stall_interval_ms / 1000
        stalled = [
            job
            for job in self._jobs.values()
            if job.state is JobState.ACTIVE and now - job.heartbeat_at >= window
        ]
        for job in stalled:
            job.run_token += 1
            handler = self._running.pop(job.id, None)
            if handler is not None:
                handler.cancel()
            job.stall_count += 1
            if job.stall_count == 1:
                logger.warning(
                    "Job stalled, returning to queue",
                    extra={"queue": self.name, "job_id": job.id, "task_id": job.task_id},
                )
                self._transition(job, JobState.WAITING)
                self._schedule(job, 0)
            else:
                await self._handle_failure(
                    job,
                    StalledJobError(f"Job {job.id} stalled repeatedly", task_id=job.task_id),
                    (now - job.heartbeat_at) * 1000,
                )
        return [job.id for job in stalled]

    # ── Administration ───────────────────────────────────────────────

    def stats(self) -> QueueStats:
        """Best-effort point-in-time counts."""
        now = asyncio.get_running_loop().time()
        stats = QueueStats(completed=len(self._completed), failed=len(self._failed))
        for job in list(self._jobs.values()):
            if job.state is JobState.WAITING:
                if job.id in self._timers and job.available_at > now:
                    stats.delayed += 1
                else:
                    stats.waiting += 1
            elif job.state is JobState.ACTIVE:
                stats.active += 1
        if self._paused:
            stats.paused, stats.waiting = stats.waiting, 0
        return stats

    async def pause(self) -> None:
        self._ensure_open()
        self._paused = True
        logger.info("Queue paused", extra={"queue": self.name})

    async def resume(self) -> None:
        self._ensure_open()
        self._paused = False
        self._wakeup.set()
        logger.info("Queue resumed", extra={"queue": self.name})

    def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def find_jobs(self, task_id: str) -> List[Job]:
        return [job for job in self._jobs.values() if job.task_id == task_id]

    def jobs(self, state: Optional[JobState] = None) -> List[Job]:
        return [job for job in self._jobs.values() if state is None or job.state is state]

    async def retry(self, job_id: str) -> Job:
        """Resubmit a failed job with a fresh attempt budget."""
        self._ensure_open()
        job = self.get_job(job_id)
        if job.state is not JobState.FAILED:
            raise JobStateError(f"Job {job_id} is {job.state.value}; only failed jobs can be retried")
        self._discard(self._failed, job.id)
        job.attempts_made = 0
        job.stall_count = 0
        job.failed_reason = None
        job.finished_at = None
        self._transition(job, JobState.WAITING)
        self._schedule(job, 0)
        self._report_queue_length()
        logger.info("Job retried", extra={"queue": self.name, "job_id": job_id, "task_id": job.task_id})
        return job

    async def remove(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job.state is JobState.ACTIVE:
            raise JobStateError(f"Job {job_id} is active and cannot be removed")
        self._drop(job)
        self._report_queue_length()
        logger.info("Job removed", extra={"queue": self.name, "job_id": job_id, "task_id": job.task_id})

    async def clear(self, state: Optional[JobState] = None) -> int:
        """Drop every job in ``state`` (all non-active jobs when omitted)."""
        if state is JobState.ACTIVE:
            raise JobStateError("Cannot clear active jobs")
        targets = [
            job
            for job in list(self._jobs.values())
            if job.state is not JobState.ACTIVE and (state is None or job.state is state)
        ]
        for job in targets:
            self._drop(job)
        self._report_queue_length()
        logger.info(
            "Queue cleared",
            extra={"queue": self.name, "state": state.value if state else "all", "cleared": len(targets)},
        )
        return len(targets)

    def is_responsive(self) -> bool:
        if self.closed or self._process_fn is None:
            return False
        return all(not worker.done() for worker in self._workers.values())

    async def close(self, grace_ms: int = 10_000) -> None:
        """Stop accepting work and drain in-flight jobs for up to ``grace_ms``."""
        if self._closing:
            return
        self._closing = True

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for recurring in self._recurring.values():
            if recurring.handle is not None:
                recurring.handle.cancel()
        self._recurring.clear()

        if self._stall_monitor is not None:
            self._stall_monitor.cancel()
            await asyncio.gather(self._stall_monitor, return_exceptions=True)

        self._wakeup.set()
        workers = list(self._workers.values())
        if workers:
            _, pending = await asyncio.wait(workers, timeout=grace_ms / 1000)
            if pending:
                logger.warning(
                    "Grace period elapsed, cancelling in-flight jobs",
                    extra={"queue": self.name, "abandoned": len(pending)},
                )
                for worker in pending:
                    worker.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._closed = True
        logger.info("Queue closed", extra={"queue": self.name})

    # ── Internals ────────────────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self.closed:
            raise PoolClosedError(f"Queue '{self.name}' is closed")

    def _transition(self, job: Job, state: JobState) -> None:
        job.state = state
        if len(job.transitions) < MAX_TRANSITIONS:
            job.transitions.append(state)

    def _retain(self, history: Deque[str], job: Job, cap: int) -> None:
        history.append(job.id)
        while len(history) > cap:
            evicted = history.popleft()
            self._jobs.pop(evicted, None)

    def _drop(self, job: Job) -> None:
        handle = self._timers.pop(job.id, None)
        if handle is not None:
            handle.cancel()
        self._discard(self._completed, job.id)
        self._discard(self._failed, job.id)
        self._jobs.pop(job.id, None)

    @staticmethod
    def _discard(history: Deque[str], job_id: str) -> None:
        try:
            history.remove(job_id)
        except ValueError:
            pass

    def _report_queue_length(self) -> None:
        if self._metrics is None:
            return
        waiting = sum(1 for job in self._jobs.values() if job.state is JobState.WAITING)
        self._metrics.update_queue_length(self.name, waiting)


def _elapsed_ms(loop: asyncio.AbstractEventLoop, started: float) -> float:
    return (loop.time() - started) * 1000


def _consume_outcome(future: asyncio.Future[Any]) -> None:
    # Handlers abandoned after a timeout or stall still finish on their own.
    if not future.cancelled():
        future.exception()
