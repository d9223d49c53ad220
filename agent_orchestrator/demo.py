"""CLI demonstration of prioritised, retried task execution without a model endpoint."""
from __future__ import annotations

import asyncio
import random

from agent_orchestrator.agents.base import Agent
from agent_orchestrator.agents.catalog import AgentSpec
from agent_orchestrator.agents.registry import HandlerRegistry
from agent_orchestrator.config import OrchestratorConfig, QueueConfig
from agent_orchestrator.core.metrics import MetricsRecorder, render_summary
from agent_orchestrator.core.models import AgentCapability, AgentResponse, ExecutionContext, Task, TaskPriority
from agent_orchestrator.orchestration.orchestrator import Orchestrator
from agent_orchestrator.services.task_store import InMemoryTaskStore

registry = HandlerRegistry()


@registry.handler("production_planning", "optimize_brewing_schedule")
async def optimize_brewing_schedule(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
    await asyncio.sleep(0.1)
    batches = task.input.get("batches", [])
    return AgentResponse(success=True, data={"schedule": sorted(batches)})


@registry.handler("production_planning", "forecast_resource_needs")
async def forecast_resource_needs(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
    await asyncio.sleep(0.05)
    # Flaky on purpose so the demo shows a retry.
    if context.attempt == 1 and random.random() < 0.7:
        raise RuntimeError("resource planner temporarily unavailable")
    return AgentResponse(success=True, data={"malt_kg": 40 * task.input.get("batches", 1)})


DEMO_AGENT = AgentSpec(
    agent_type="production_planning",
    name="Demo Planner",
    description="Local handlers standing in for model-backed planning",
    system_prompt="",
    capabilities=[
        AgentCapability(name="optimize_brewing_schedule", description="Order batches"),
        AgentCapability(name="forecast_resource_needs", description="Estimate malt usage"),
    ],
)


async def main() -> None:
    metrics = MetricsRecorder()
    orchestrator = Orchestrator(
        store=InMemoryTaskStore(),
        handlers=registry,
        agent_specs=[DEMO_AGENT],
        metrics=metrics,
        queue_config=QueueConfig(backoff_ms=200),
        settings=OrchestratorConfig(concurrency={"production_planning": 1}),
        recurring_tasks=[],
    )
    await orchestrator.initialize()

    low = await orchestrator.execute_task(
        "production_planning", "optimize_brewing_schedule", {"batches": ["stout", "ipa"]}, TaskPriority.LOW
    )
    urgent = await orchestrator.execute_task(
        "production_planning", "forecast_resource_needs", {"batches": 3}, TaskPriority.URGENT
    )
    print(f"Submitted low={low} urgent={urgent}")

    for _ in range(50):
        tasks = [await orchestrator.get_task_status(task_id) for task_id in (low, urgent)]
        if all(task and task.completed_at for task in tasks):
            break
        await asyncio.sleep(0.1)

    for task in tasks:
        print(f"{task.type}: {task.status.value} after {task.attempts} attempt(s) -> {task.output or task.error}")

    stats = await orchestrator.get_orchestrator_stats()
    print(f"System health: {stats.system_health.overall}")
    metrics.recompute_percentiles()
    print(render_summary(metrics.export_snapshot()))

    await orchestrator.shutdown()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
