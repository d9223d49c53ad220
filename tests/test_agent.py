"""Tests for agent execution, memory, metrics and status transitions."""
from __future__ import annotations

import asyncio
from typing import List

import pytest

from agent_orchestrator.agents.base import SHORT_TERM_LIMIT, Agent
from agent_orchestrator.core.errors import ExecutionError, ValidationError
from agent_orchestrator.core.models import (
    AgentConfig,
    AgentResponse,
    AgentStatus,
    ExecutionContext,
    Task,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def analyse(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
    if task.input.get("fail"):
        raise RuntimeError(f"cannot analyse {task.id}")
    return AgentResponse(success=True, data={"echo": task.input.get("value")})


async def refuse(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
    return AgentResponse(success=False, error="insufficient data")


def make_agent(**handlers) -> Agent:
    return Agent(
        agent_type="financial_operations",
        name="Finance",
        description="Test agent",
        config=AgentConfig(model="test-model", temperature=0.2, max_tokens=256, system_prompt="Be terse."),
        handlers=handlers or {"analyze_product_costs": analyse, "assess_profitability": refuse},
    )


def make_task(n: int, task_type: str = "analyze_product_costs", **input) -> Task:
    return Task(id=f"task-{n}", type=task_type, agent_type="financial_operations", input=input)


async def run(agent: Agent, task: Task) -> None:
    try:
        await agent.execute(task, ExecutionContext(task_id=task.id))
    except ExecutionError:
        pass


@pytest.mark.anyio
async def test_success_rate_and_health_thresholds() -> None:
    agent = make_agent()
    for n in range(4):
        await run(agent, make_task(n, fail=True))
    for n in range(4, 10):
        await run(agent, make_task(n, value=n))

    metrics = agent.get_metrics()
    assert metrics.tasks_processed == 10
    assert metrics.success_rate == pytest.approx(60.0)
    assert agent.status is AgentStatus.ACTIVE
    assert agent.is_healthy()

    await run(agent, make_task(10, fail=True))
    assert agent.status is AgentStatus.ERROR
    assert agent.get_metrics().success_rate == pytest.approx(600 / 11)
    # The failure left the agent in ERROR; clear it administratively to read the rate alone.
    agent.set_status(AgentStatus.ACTIVE)
    assert agent.get_metrics().success_rate == pytest.approx(54.545, abs=0.01)
    assert agent.is_healthy()

    await run(agent, make_task(11, fail=True))
    agent.set_status(AgentStatus.ACTIVE)
    assert agent.get_metrics().success_rate == pytest.approx(50.0)
    assert not agent.is_healthy()


@pytest.mark.anyio
async def test_average_execution_time_is_a_running_mean() -> None:
    durations = iter([0.01, 0.03])

    async def timed(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
        await asyncio.sleep(next(durations))
        return AgentResponse(success=True, data={})

    agent = make_agent(analyze_product_costs=timed)
    await run(agent, make_task(1))
    first = agent.get_metrics().average_execution_time
    await run(agent, make_task(2))
    second = agent.get_metrics().average_execution_time

    assert first >= 9
    assert second > first
    assert second >= 19


@pytest.mark.anyio
async def test_error_records_last_error_and_recovers_on_success() -> None:
    agent = make_agent()

    with pytest.raises(ExecutionError, match="cannot analyse task-1"):
        await agent.execute(make_task(1, fail=True), ExecutionContext(task_id="task-1"))
    metrics = agent.get_metrics()
    assert agent.status is AgentStatus.ERROR
    assert metrics.last_error == "cannot analyse task-1"
    assert metrics.last_error_time is not None

    response = await agent.execute(make_task(2, value="ok"), ExecutionContext(task_id="task-2"))
    assert response.data == {"echo": "ok"}
    assert response.metadata["agent_id"] == agent.id
    assert "execution_time" in response.metadata
    assert agent.status is AgentStatus.ACTIVE


@pytest.mark.anyio
async def test_unsuccessful_response_is_an_execution_failure() -> None:
    agent = make_agent()

    with pytest.raises(ExecutionError, match="insufficient data"):
        await agent.execute(make_task(1, task_type="assess_profitability"), ExecutionContext(task_id="task-1"))
    assert agent.get_metrics().success_rate == 0.0
    assert agent.status is AgentStatus.ERROR


@pytest.mark.anyio
async def test_unknown_task_type_is_rejected_without_side_effects() -> None:
    agent = make_agent()

    with pytest.raises(ValidationError):
        await agent.execute(make_task(1, task_type="launch_rockets"), ExecutionContext(task_id="task-1"))
    assert agent.get_metrics().tasks_processed == 0
    assert agent.status is AgentStatus.ACTIVE
    assert agent.snapshot().memory.context_history == []


@pytest.mark.anyio
async def test_inactive_agent_is_never_reactivated_by_execution() -> None:
    agent = make_agent()
    agent.set_status(AgentStatus.INACTIVE)

    await run(agent, make_task(1, value=1))
    await run(agent, make_task(2, fail=True))

    assert agent.status is AgentStatus.INACTIVE
    assert agent.get_metrics().tasks_processed == 2


@pytest.mark.anyio
async def test_status_is_processing_while_any_execution_is_in_flight() -> None:
    gates = [asyncio.Event(), asyncio.Event()]
    seen: List[AgentStatus] = []

    async def gated(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
        seen.append(agent.status)
        await gates[task.input["gate"]].wait()
        return AgentResponse(success=True, data={})

    agent = make_agent(analyze_product_costs=gated)
    first = asyncio.create_task(run(agent, make_task(1, gate=0)))
    second = asyncio.create_task(run(agent, make_task(2, gate=1)))
    await asyncio.sleep(0.01)
    assert agent.status is AgentStatus.PROCESSING

    gates[0].set()
    await first
    assert agent.status is AgentStatus.PROCESSING

    gates[1].set()
    await second
    assert agent.status is AgentStatus.ACTIVE
    assert seen == [AgentStatus.PROCESSING, AgentStatus.PROCESSING]


@pytest.mark.anyio
async def test_cancelled_execution_counts_as_failure() -> None:
    async def slow(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
        await asyncio.sleep(5)
        return AgentResponse(success=True)

    agent = make_agent(analyze_product_costs=slow)
    running = asyncio.create_task(agent.execute(make_task(1), ExecutionContext(task_id="task-1")))
    await asyncio.sleep(0.01)
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    assert agent.status is AgentStatus.ERROR
    assert agent.get_metrics().tasks_processed == 1
    assert agent.get_metrics().success_rate == 0.0


@pytest.mark.anyio
async def test_short_term_memory_keeps_the_most_recent_entries() -> None:
    agent = make_agent()
    total = SHORT_TERM_LIMIT + 5
    for n in range(total):
        await run(agent, make_task(n, value=n))

    assert agent.get_from_memory("short_term", "task_task-0") is None
    assert agent.get_from_memory("short_term", "task_task-4") is None
    latest = agent.get_from_memory("short_term", f"task_task-{total - 1}")
    assert latest["result"] == {"echo": total - 1}
    assert len(agent.snapshot().memory.short_term) == SHORT_TERM_LIMIT


@pytest.mark.anyio
async def test_context_relevance_grows_with_same_type_history() -> None:
    agent = make_agent()
    for n in range(7):
        await run(agent, make_task(n, value=n))
    await run(agent, make_task(7, task_type="assess_profitability"))

    history = agent.snapshot().memory.context_history
    relevances = [entry.relevance for entry in history]
    assert relevances[:7] == pytest.approx([0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.0])
    assert relevances[7] == pytest.approx(0.5)
    assert len(history) == 8


@pytest.mark.anyio
async def test_relevance_scorer_is_pluggable_and_history_is_bounded() -> None:
    agent = Agent(
        agent_type="compliance",
        name="Compliance",
        description="",
        config=AgentConfig(model="m", temperature=0.1, max_tokens=10, system_prompt=""),
        handlers={"analyze_product_costs": analyse},
        relevance_scorer=lambda task, history: 0.9,
    )
    for n in range(60):
        await run(agent, make_task(n, value=n))

    history = agent.snapshot().memory.context_history
    assert len(history) == 50
    assert history[0].task_id == "task-10"
    assert {entry.relevance for entry in history} == {0.9}

    relevant = agent.get_relevant_memory()
    assert len(relevant["recent_context"]) == 10
    assert len(relevant["short_term"]) == 10


@pytest.mark.anyio
async def test_memory_kinds_and_snapshot_isolation() -> None:
    agent = make_agent()
    await agent.store_in_memory("long_term", "supplier", {"name": "Malt Co"})
    await agent.store_in_memory("short_term", "note", "check barley prices")

    with pytest.raises(ValueError):
        await agent.store_in_memory("episodic", "x", 1)

    fact = agent.get_from_memory("long_term", "supplier")
    fact["name"] = "changed"
    assert agent.get_from_memory("long_term", "supplier") == {"name": "Malt Co"}

    snapshot = agent.snapshot()
    snapshot.memory.long_term.clear()
    snapshot.metrics.tasks_processed = 99
    assert agent.get_from_memory("long_term", "supplier") is not None
    assert agent.get_metrics().tasks_processed == 0
    assert agent.snapshot() == agent.snapshot()


def test_agent_requires_handlers() -> None:
    with pytest.raises(ValueError):
        Agent(
            agent_type="compliance",
            name="Empty",
            description="",
            config=AgentConfig(model="m", temperature=0.1, max_tokens=10, system_prompt=""),
            handlers={},
        )


@pytest.mark.anyio
async def test_handler_validation_error_is_not_wrapped() -> None:
    async def reject(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
        raise ValidationError("cost sheet has no line items")

    agent = make_agent(analyze_product_costs=reject)

    with pytest.raises(ValidationError, match="no line items") as excinfo:
        await agent.execute(make_task(1), ExecutionContext(task_id="task-1"))
    assert not isinstance(excinfo.value, ExecutionError)
    assert agent.get_metrics().last_error == "cost sheet has no line items"


@pytest.mark.anyio
async def test_snapshot_carries_health() -> None:
    agent = make_agent()
    assert agent.snapshot().healthy is True

    await run(agent, make_task(1, fail=True))
    snapshot = agent.snapshot()
    assert snapshot.status is AgentStatus.ERROR
    assert snapshot.healthy is False
    assert snapshot.to_dict()["healthy"] is False
