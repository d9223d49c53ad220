"""HTTP routes for agent status, control and queue administration."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from agent_orchestrator.core.models import AgentMetrics, AgentSnapshot, JobState, QueueStats
from agent_orchestrator.orchestration.orchestrator import Orchestrator
from agent_orchestrator.runtime import get_orchestrator

router = APIRouter(tags=["agents"])


class MetricsResponse(BaseModel):
    tasks_processed: int
    success_rate: float
    average_execution_time: float
    last_error: Optional[str]
    last_error_time: Optional[datetime]

    @classmethod
    def from_metrics(cls, metrics: AgentMetrics) -> "MetricsResponse":
        return cls(
            tasks_processed=metrics.tasks_processed,
            success_rate=metrics.success_rate,
            average_execution_time=metrics.average_execution_time,
            last_error=metrics.last_error,
            last_error_time=metrics.last_error_time,
        )


class AgentResponse(BaseModel):
    id: str
    type: str
    name: str
    description: str
    status: str
    capabilities: List[str]
    model: str
    healthy: bool
    metrics: MetricsResponse

    @classmethod
    def from_snapshot(cls, snapshot: AgentSnapshot) -> "AgentResponse":
        return cls(
            id=snapshot.id,
            type=snapshot.type,
            name=snapshot.name,
            description=snapshot.description,
            status=snapshot.status.value,
            capabilities=[cap.name for cap in snapshot.capabilities],
            model=snapshot.config.model,
            healthy=snapshot.healthy,
            metrics=MetricsResponse.from_metrics(snapshot.metrics),
        )


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: int

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueStatsResponse":
        return cls(**stats.to_dict())


class ClearResponse(BaseModel):
    cleared: int


@router.get("/agents", response_model=List[AgentResponse])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[AgentResponse]:
    return [AgentResponse.from_snapshot(snap) for snap in orchestrator.get_agent_status().values()]


@router.get("/agents/{agent_type}", response_model=AgentResponse)
async def get_agent(agent_type: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentResponse:
    return AgentResponse.from_snapshot(orchestrator.get_agent_status(agent_type))


@router.get("/agents/{agent_type}/metrics", response_model=MetricsResponse)
async def get_agent_metrics(
    agent_type: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> MetricsResponse:
    return MetricsResponse.from_metrics(orchestrator.get_agent_metrics(agent_type))


@router.post("/agents/{agent_type}/pause", status_code=status.HTTP_204_NO_CONTENT)
async def pause_agent(agent_type: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    await orchestrator.pause_agent(agent_type)


@router.post("/agents/{agent_type}/resume", status_code=status.HTTP_204_NO_CONTENT)
async def resume_agent(agent_type: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    await orchestrator.resume_agent(agent_type)


@router.get("/queues", response_model=Dict[str, QueueStatsResponse])
async def queue_stats(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, QueueStatsResponse]:
    return {name: QueueStatsResponse.from_stats(stats) for name, stats in orchestrator.get_queue_stats().items()}


@router.get("/queues/{agent_type}", response_model=QueueStatsResponse)
async def queue_stats_for(
    agent_type: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> QueueStatsResponse:
    return QueueStatsResponse.from_stats(orchestrator.get_queue_stats(agent_type))


@router.delete("/queues/{agent_type}", response_model=ClearResponse)
async def clear_queue(
    agent_type: str,
    state: Optional[JobState] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ClearResponse:
    return ClearResponse(cleared=await orchestrator.clear_queue(agent_type, state))


@router.delete("/queues/{agent_type}/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_job(
    agent_type: str,
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> None:
    await orchestrator.remove_job(agent_type, job_id)
