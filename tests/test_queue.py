"""Tests for the per-type worker pool."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, List

import pytest

from agent_orchestrator.core.errors import (
    ExecutionError,
    JobNotFoundError,
    JobStateError,
    PoolClosedError,
    ValidationError,
)
from agent_orchestrator.core.metrics import MetricsRecorder
from agent_orchestrator.core.models import JobState, RetryPolicy, TaskPriority
from agent_orchestrator.core.queue import Job, JobContext, WorkerPool


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def fast_policy(max_attempts: int = 3, backoff_ms: int = 10, timeout_ms: int = 5_000) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff_ms=backoff_ms, timeout_ms=timeout_ms)


def job_for(pool: WorkerPool, task_id: str) -> Job:
    return pool.find_jobs(task_id)[0]


@pytest.mark.anyio
async def test_urgent_job_runs_before_low_job() -> None:
    pool = WorkerPool("production_planning", defaults=fast_policy())
    order: List[str] = []

    async def process(job: Job, context: JobContext) -> Any:
        order.append(job.task_type)
        return {"done": job.task_type}

    low = await pool.enqueue("low", {}, TaskPriority.LOW)
    urgent = await pool.enqueue("urgent", {}, TaskPriority.URGENT)
    pool.register_executor(process, concurrency=1)

    await wait_until(lambda: len(order) == 2)
    assert order == ["urgent", "low"]
    assert job_for(pool, urgent).finished_at <= job_for(pool, low).processed_at
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_equal_priority_preserves_submission_order() -> None:
    pool = WorkerPool("compliance", defaults=fast_policy())
    order: List[int] = []

    async def process(job: Job, context: JobContext) -> Any:
        order.append(job.input["n"])

    for n in range(5):
        await pool.enqueue("check", {"n": n}, TaskPriority.HIGH)
    await pool.enqueue("check", {"n": 99}, TaskPriority.URGENT)
    pool.register_executor(process, concurrency=1)

    await wait_until(lambda: len(order) == 6)
    assert order == [99, 0, 1, 2, 3, 4]
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_concurrency_limit_is_respected() -> None:
    pool = WorkerPool("inventory_intelligence", defaults=fast_policy())
    running = 0
    peak = 0
    done = 0

    async def process(job: Job, context: JobContext) -> Any:
        nonlocal running, peak, done
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        done += 1

    pool.register_executor(process, concurrency=3)
    for n in range(9):
        await pool.enqueue("forecast", {"n": n})

    await wait_until(lambda: done == 9)
    assert peak == 3
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_job_succeeds_after_k_failures_with_k_plus_one_attempts() -> None:
    pool = WorkerPool("financial_operations", defaults=fast_policy(max_attempts=3))
    calls = 0

    async def process(job: Job, context: JobContext) -> Any:
        nonlocal calls
        calls += 1
        if context.attempt <= 2:
            raise ExecutionError(f"flaky {context.attempt}")
        return {"ok": True}

    pool.register_executor(process)
    task_id = await pool.enqueue("forecast_cash_flow", {})
    job = job_for(pool, task_id)

    await wait_until(lambda: job.state is JobState.COMPLETED)
    assert job.attempts_made == 3
    assert calls == 3
    assert job.result == {"ok": True}
    assert job.failed_reason is None
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_always_failing_job_backs_off_exponentially_then_fails() -> None:
    pool = WorkerPool("compliance", defaults=fast_policy(max_attempts=3, backoff_ms=40))
    outcomes: List[bool] = []

    async def process(job: Job, context: JobContext) -> Any:
        raise RuntimeError("always broken")

    async def on_failure(job: Job, exc: BaseException, will_retry: bool) -> None:
        outcomes.append(will_retry)

    pool.register_executor(process, on_failure=on_failure)
    loop = asyncio.get_running_loop()
    started = loop.time()
    task_id = await pool.enqueue("manage_recalls", {})
    job = job_for(pool, task_id)

    await wait_until(lambda: job.state is JobState.FAILED)
    elapsed = loop.time() - started

    assert job.transitions == [
        JobState.WAITING,
        JobState.ACTIVE,
        JobState.WAITING,
        JobState.ACTIVE,
        JobState.WAITING,
        JobState.ACTIVE,
        JobState.FAILED,
    ]
    assert elapsed >= (40 + 80) / 1000
    assert job.attempts_made == 3
    assert outcomes == [True, True, False]
    assert job.failed_reason == "always broken"
    assert pool.stats().failed == 1
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_validation_errors_are_not_retried() -> None:
    pool = WorkerPool("compliance", defaults=fast_policy(max_attempts=5))

    async def process(job: Job, context: JobContext) -> Any:
        raise ValidationError("bad input")

    pool.register_executor(process)
    task_id = await pool.enqueue("validate_labeling_compliance", {})
    job = job_for(pool, task_id)

    await wait_until(lambda: job.state is JobState.FAILED)
    assert job.attempts_made == 1
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_timeout_counts_as_failed_attempt() -> None:
    pool = WorkerPool("customer_experience", defaults=fast_policy(max_attempts=2, timeout_ms=50))
    cancelled: List[bool] = []

    async def process(job: Job, context: JobContext) -> Any:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    pool.register_executor(process)
    task_id = await pool.enqueue("plan_customer_events", {})
    job = job_for(pool, task_id)

    await wait_until(lambda: job.state is JobState.FAILED)
    await asyncio.sleep(0.01)
    assert job.attempts_made == 2
    assert "timed out" in job.failed_reason
    assert cancelled == [True, True]
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_first_stall_requeues_for_free() -> None:
    pool = WorkerPool("production_planning", defaults=fast_policy(max_attempts=1), stall_interval_ms=60_000)
    calls = 0
    hang = asyncio.Event()

    async def process(job: Job, context: JobContext) -> Any:
        nonlocal calls
        calls += 1
        if calls == 1:
            await hang.wait()
        return {"run": calls}

    pool.register_executor(process)
    task_id = await pool.enqueue("plan_batch_sequencing", {})
    job = job_for(pool, task_id)
    await wait_until(lambda: job.state is JobState.ACTIVE)

    job.heartbeat_at = asyncio.get_running_loop().time() - 120
    stalled = await pool.check_stalled()

    assert stalled == [job.id]
    await wait_until(lambda: job.state is JobState.COMPLETED)
    assert job.stall_count == 1
    assert job.attempts_made == 1
    assert job.result == {"run": 2}
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_second_stall_counts_as_failure() -> None:
    pool = WorkerPool("production_planning", defaults=fast_policy(max_attempts=1), stall_interval_ms=60_000)

    async def process(job: Job, context: JobContext) -> Any:
        await asyncio.Event().wait()

    pool.register_executor(process)
    task_id = await pool.enqueue("plan_batch_sequencing", {})
    job = job_for(pool, task_id)
    loop = asyncio.get_running_loop()

    for _ in range(2):
        await wait_until(lambda: job.state is JobState.ACTIVE)
        job.heartbeat_at = loop.time() - 120
        await pool.check_stalled()

    assert job.state is JobState.FAILED
    assert job.stall_count == 2
    assert job.attempts_made == 1
    assert "stalled" in job.failed_reason
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_paused_pool_accepts_jobs_but_runs_nothing_until_resumed() -> None:
    pool = WorkerPool("inventory_intelligence", defaults=fast_policy())
    ran: List[str] = []

    async def process(job: Job, context: JobContext) -> Any:
        ran.append(job.task_id)

    pool.register_executor(process, concurrency=2)
    await pool.pause()
    task_id = await pool.enqueue("forecast_demand", {})
    await asyncio.sleep(0.05)

    assert ran == []
    assert job_for(pool, task_id).state is JobState.WAITING
    stats = pool.stats()
    assert stats.paused == 1
    assert stats.waiting == 0

    await pool.resume()
    await wait_until(lambda: ran == [task_id])
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_delayed_job_is_counted_as_delayed_until_due() -> None:
    pool = WorkerPool("financial_operations", defaults=fast_policy())
    started_at: List[float] = []

    async def process(job: Job, context: JobContext) -> Any:
        started_at.append(asyncio.get_running_loop().time())

    pool.register_executor(process)
    loop = asyncio.get_running_loop()
    submitted = loop.time()
    await pool.enqueue("assess_profitability", {}, delay_ms=100)

    assert pool.stats().delayed == 1
    assert pool.stats().waiting == 0
    await wait_until(lambda: started_at)
    assert started_at[0] - submitted >= 0.099
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_negative_delay_is_rejected() -> None:
    pool = WorkerPool("compliance")
    with pytest.raises(ValidationError):
        await pool.enqueue("generate_compliance_report", {}, delay_ms=-1)
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_recurring_schedule_is_validated_and_idempotent() -> None:
    pool = WorkerPool("compliance")

    with pytest.raises(ValidationError):
        pool.add_recurring("monitor_license_status", {}, "not a cron")

    key = pool.add_recurring("monitor_license_status", {}, "0 9 * * *", priority=TaskPriority.HIGH)
    assert pool.add_recurring("monitor_license_status", {}, "0 9 * * *") == key
    listed = pool.recurring()
    assert [entry["key"] for entry in listed] == [key]
    assert listed[0]["next_run"].endswith("09:00:00+00:00")

    assert pool.remove_recurring(key) is True
    assert pool.remove_recurring(key) is False
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_each_recurring_firing_is_an_independent_job() -> None:
    pool = WorkerPool("inventory_intelligence", defaults=fast_policy())
    seen: List[Job] = []

    async def process(job: Job, context: JobContext) -> Any:
        seen.append(job)

    pool.register_executor(process)
    # Six fields: the last one is seconds, so this fires every second.
    key = pool.add_recurring("assess_stock_risks", {"riskTolerance": 0.05}, "* * * * * *")

    await wait_until(lambda: len(seen) >= 2, timeout=3.5)
    assert all(job.repeat_key == key for job in seen)
    assert len({job.id for job in seen}) == len(seen)
    assert len({job.task_id for job in seen}) == len(seen)
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_retry_resubmits_only_failed_jobs() -> None:
    pool = WorkerPool("customer_experience", defaults=fast_policy(max_attempts=1))
    calls = 0

    async def process(job: Job, context: JobContext) -> Any:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first run fails")
        return "second run"

    pool.register_executor(process)
    task_id = await pool.enqueue("analyze_customer_feedback", {})
    job = job_for(pool, task_id)
    await wait_until(lambda: job.state is JobState.FAILED)

    await pool.retry(job.id)
    await wait_until(lambda: job.state is JobState.COMPLETED)
    assert job.result == "second run"
    assert pool.stats().failed == 0

    with pytest.raises(JobStateError):
        await pool.retry(job.id)
    with pytest.raises(JobNotFoundError):
        await pool.retry("missing")
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_remove_and_clear() -> None:
    pool = WorkerPool("production_planning", defaults=fast_policy())
    release = asyncio.Event()

    async def process(job: Job, context: JobContext) -> Any:
        await release.wait()

    pool.register_executor(process, concurrency=1)
    active_id = await pool.enqueue("optimize_brewing_schedule", {})
    active = job_for(pool, active_id)
    await wait_until(lambda: active.state is JobState.ACTIVE)
    waiting_ids = [await pool.enqueue("optimize_brewing_schedule", {"n": n}) for n in range(3)]

    with pytest.raises(JobStateError):
        await pool.remove(active.id)
    with pytest.raises(JobStateError):
        await pool.clear(JobState.ACTIVE)

    await pool.remove(job_for(pool, waiting_ids[0]).id)
    assert pool.find_jobs(waiting_ids[0]) == []
    assert await pool.clear(JobState.WAITING) == 2
    assert pool.stats().waiting == 0
    assert pool.stats().active == 1

    release.set()
    await wait_until(lambda: active.state is JobState.COMPLETED)
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_history_is_bounded() -> None:
    pool = WorkerPool("compliance", defaults=fast_policy(), keep_completed=2)

    async def process(job: Job, context: JobContext) -> Any:
        return job.input["n"]

    pool.register_executor(process)
    task_ids = [await pool.enqueue("track_regulatory_changes", {"n": n}) for n in range(4)]
    await wait_until(lambda: pool.stats().completed == 2 and not pool.jobs(JobState.WAITING) and not pool.jobs(JobState.ACTIVE))

    assert pool.find_jobs(task_ids[0]) == []
    assert [job.result for job in pool.jobs(JobState.COMPLETED)] == [2, 3]
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_outcomes_feed_metrics_recorder() -> None:
    metrics = MetricsRecorder()
    metrics.register_agent_type("compliance")
    pool = WorkerPool("compliance", defaults=fast_policy(max_attempts=1), metrics=metrics)

    async def process(job: Job, context: JobContext) -> Any:
        if job.input.get("fail"):
            raise RuntimeError("boom")

    pool.register_executor(process)
    await pool.enqueue("calculate_excise_taxes", {})
    await pool.enqueue("calculate_excise_taxes", {"fail": True})
    await wait_until(lambda: pool.stats().completed + pool.stats().failed == 2)

    snapshot = metrics.export_snapshot().agents["compliance"]
    assert snapshot.tasks_processed == 2
    assert snapshot.tasks_successful == 1
    assert snapshot.tasks_failed == 1
    assert snapshot.queue_length == 0
    await pool.close(grace_ms=100)


@pytest.mark.anyio
async def test_register_executor_twice_is_rejected() -> None:
    pool = WorkerPool("compliance")

    async def process(job: Job, context: JobContext) -> Any:
        return None

    pool.register_executor(process)
    assert pool.is_responsive()
    with pytest.raises(RuntimeError):
        pool.register_executor(process)
    await pool.close(grace_ms=100)
    assert not pool.is_responsive()


@pytest.mark.anyio
async def test_closed_pool_rejects_work_and_close_is_idempotent() -> None:
    pool = WorkerPool("financial_operations")

    async def process(job: Job, context: JobContext) -> Any:
        return None

    pool.register_executor(process)
    await pool.close(grace_ms=100)
    await pool.close(grace_ms=100)

    with pytest.raises(PoolClosedError):
        await pool.enqueue("forecast_cash_flow", {})
    with pytest.raises(PoolClosedError):
        await pool.pause()


@pytest.mark.anyio
async def test_close_cancels_jobs_past_the_grace_period() -> None:
    pool = WorkerPool("production_planning")
    cancelled = asyncio.Event()

    async def process(job: Job, context: JobContext) -> Any:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    pool.register_executor(process)
    task_id = await pool.enqueue("optimize_brewing_schedule", {})
    await wait_until(lambda: job_for(pool, task_id).state is JobState.ACTIVE)

    await pool.close(grace_ms=50)
    await asyncio.sleep(0.01)
    assert cancelled.is_set()
    assert pool.closed
