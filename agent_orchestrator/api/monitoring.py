"""HTTP routes for orchestrator statistics and metrics export."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from agent_orchestrator.config import config
from agent_orchestrator.core.metrics import MetricsRecorder, render_summary, to_prometheus
from agent_orchestrator.orchestration.orchestrator import Orchestrator
from agent_orchestrator.runtime import get_metrics, get_orchestrator

router = APIRouter(tags=["monitoring"])


@router.get("/stats")
async def orchestrator_stats(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    stats = await orchestrator.get_orchestrator_stats()
    return stats.to_dict()


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics_export(metrics: MetricsRecorder = Depends(get_metrics)) -> str:
    return to_prometheus(metrics.export_snapshot(), prefix=config.metrics.prefix)


@router.get("/metrics/summary", response_class=PlainTextResponse)
async def metrics_summary(metrics: MetricsRecorder = Depends(get_metrics)) -> str:
    return render_summary(metrics.export_snapshot())
