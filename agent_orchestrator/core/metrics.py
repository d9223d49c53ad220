"""In-process metrics recorder with bounded-memory percentile estimation."""
from __future__ import annotations

import asyncio
import logging
import math
import os
import resource
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Deque, Dict, Mapping, Optional

from agent_orchestrator.core.models import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PerformanceMetrics:
    request_count: int = 0
    error_count: int = 0
    average_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0
    active_connections: int = 0


@dataclass(slots=True)
class AgentTaskMetrics:
    tasks_processed: int = 0
    tasks_successful: int = 0
    tasks_failed: int = 0
    average_execution_time: float = 0.0
    queue_length: int = 0
    last_activity: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PerformanceSnapshot:
    request_count: int
    error_count: int
    average_response_time: float
    p95_response_time: float
    p99_response_time: float
    active_connections: int


@dataclass(frozen=True)
class AgentTaskSnapshot:
    tasks_processed: int
    tasks_successful: int
    tasks_failed: int
    average_execution_time: float
    queue_length: int
    last_activity: datetime


@dataclass(frozen=True)
class SystemSnapshot:
    uptime_seconds: float
    cpu_seconds: float
    max_rss_bytes: int
    pid: int


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable view of every metric at one instant."""

    timestamp: datetime
    performance: PerformanceSnapshot
    agents: Mapping[str, AgentTaskSnapshot]
    system: SystemSnapshot


class MetricsRecorder:
    """Counts requests and agent tasks; recomputes percentiles on an interval.

    Writes are O(1). Response times go into a ring buffer capped at
    ``history_size`` that is only sorted when percentiles are recomputed,
    either by the background loop started with :meth:`start` or by an
    explicit :meth:`recompute_percentiles` call.
    """

    def __init__(self, *, interval_ms: int = 60_000, history_size: int = 1000) -> None:
        self.interval_ms = interval_ms
        self.history_size = history_size
        self._performance = PerformanceMetrics()
        self._agents: Dict[str, AgentTaskMetrics] = {}
        self._response_times: Deque[float] = deque(maxlen=history_size)
        self._started_at = time.monotonic()
        self._runner: Optional[asyncio.Task[None]] = None

    def register_agent_type(self, agent_type: str) -> None:
        self._agents.setdefault(agent_type, AgentTaskMetrics())

    def record_request(self, duration_ms: float, success: bool = True) -> None:
        perf = self._performance
        perf.request_count += 1
        if not success:
            perf.error_count += 1
        self._response_times.append(duration_ms)
        perf.average_response_time += (duration_ms - perf.average_response_time) / perf.request_count

    def record_agent_task(self, agent_type: str, duration_ms: float, success: bool = True) -> None:
        metrics = self._agents.get(agent_type)
        if metrics is None:
            logger.warning("Agent metrics not found", extra={"agent_type": agent_type})
            return

        metrics.tasks_processed += 1
        metrics.last_activity = utc_now()
        if success:
            metrics.tasks_successful += 1
        else:
            metrics.tasks_failed += 1
        metrics.average_execution_time += (
            duration_ms - metrics.average_execution_time
        ) / metrics.tasks_processed

        logger.debug(
            "Agent task recorded",
            extra={"agent_type": agent_type, "duration_ms": duration_ms, "success": success},
        )

    def update_queue_length(self, agent_type: str, length: int) -> None:
        metrics = self._agents.get(agent_type)
        if metrics is not None:
            metrics.queue_length = length

    def record_active_connections(self, count: int) -> None:
        self._performance.active_connections = count

    def recompute_percentiles(self) -> None:
        """Sort the current ring-buffer snapshot and refresh p95/p99."""
        if not self._response_times:
            return
        ordered = sorted(self._response_times)
        self._performance.p95_response_time = ordered[_rank(len(ordered), 0.95)]
        self._performance.p99_response_time = ordered[_rank(len(ordered), 0.99)]

    def export_snapshot(self) -> MetricsSnapshot:
        perf = self._performance
        agents = {
            agent_type: AgentTaskSnapshot(
                tasks_processed=m.tasks_processed,
                tasks_successful=m.tasks_successful,
                tasks_failed=m.tasks_failed,
                average_execution_time=m.average_execution_time,
                queue_length=m.queue_length,
                last_activity=m.last_activity,
            )
            for agent_type, m in self._agents.items()
        }
        return MetricsSnapshot(
            timestamp=utc_now(),
            performance=PerformanceSnapshot(
                request_count=perf.request_count,
                error_count=perf.error_count,
                average_response_time=perf.average_response_time,
                p95_response_time=perf.p95_response_time,
                p99_response_time=perf.p99_response_time,
                active_connections=perf.active_connections,
            ),
            agents=MappingProxyType(agents),
            system=self._system_snapshot(),
        )

    def reset(self) -> None:
        self._performance = PerformanceMetrics()
        self._response_times.clear()
        for agent_type in list(self._agents):
            self._agents[agent_type] = AgentTaskMetrics()
        logger.info("Metrics reset")

    def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = asyncio.create_task(self._run())
        logger.info("Metrics collection started", extra={"interval_ms": self.interval_ms})

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._runner.cancel()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None
        logger.info("Metrics collection stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            try:
                self.recompute_percentiles()
            except Exception:  # noqa: BLE001
                logger.exception("Error collecting metrics")

    def _system_snapshot(self) -> SystemSnapshot:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        return SystemSnapshot(
            uptime_seconds=time.monotonic() - self._started_at,
            cpu_seconds=usage.ru_utime + usage.ru_stime,
            # ru_maxrss is reported in kilobytes on Linux.
            max_rss_bytes=int(usage.ru_maxrss) * 1024,
            pid=os.getpid(),
        )


def _rank(count: int, quantile: float) -> int:
    # Nearest-rank: ceil(n * q) - 1, clamped to the buffer.
    index = math.ceil(count * quantile) - 1
    return min(max(index, 0), count - 1)


def to_prometheus(snapshot: MetricsSnapshot, prefix: str = "brewmaster") -> str:
    """Render a snapshot in the Prometheus text exposition format."""
    lines = []

    def metric(name: str, kind: str, help_text: str, samples: Mapping[str, float]) -> None:
        lines.append(f"# HELP {prefix}_{name} {help_text}")
        lines.append(f"# TYPE {prefix}_{name} {kind}")
        for labels, value in samples.items():
            lines.append(f"{prefix}_{name}{labels} {value}")

    perf = snapshot.performance
    metric("requests_total", "counter", "Total number of requests", {"": perf.request_count})
    metric("errors_total", "counter", "Total number of errors", {"": perf.error_count})
    metric(
        "response_time_average",
        "gauge",
        "Average response time in milliseconds",
        {"": perf.average_response_time},
    )
    metric(
        "response_time_ms",
        "gauge",
        "Response time percentiles in milliseconds",
        {
            '{quantile="0.95"}': perf.p95_response_time,
            '{quantile="0.99"}': perf.p99_response_time,
        },
    )
    metric("active_connections", "gauge", "Active connections", {"": perf.active_connections})

    def per_agent(attr: str) -> Dict[str, float]:
        return {
            f'{{agent="{agent_type}"}}': getattr(agent, attr)
            for agent_type, agent in sorted(snapshot.agents.items())
        }

    metric(
        "agent_tasks_processed_total",
        "counter",
        "Total tasks processed by agent",
        per_agent("tasks_processed"),
    )
    metric(
        "agent_tasks_successful_total",
        "counter",
        "Successful tasks by agent",
        per_agent("tasks_successful"),
    )
    metric("agent_tasks_failed_total", "counter", "Failed tasks by agent", per_agent("tasks_failed"))
    metric(
        "agent_execution_time_average",
        "gauge",
        "Average task execution time in milliseconds",
        per_agent("average_execution_time"),
    )
    metric("agent_queue_length", "gauge", "Current queue length for agent", per_agent("queue_length"))

    system = snapshot.system
    metric("process_uptime_seconds", "gauge", "Process uptime", {"": round(system.uptime_seconds, 3)})
    metric("process_cpu_seconds_total", "counter", "CPU time consumed", {"": round(system.cpu_seconds, 3)})
    metric("process_max_rss_bytes", "gauge", "Peak resident memory", {"": system.max_rss_bytes})
    return "\n".join(lines) + "\n"


def render_summary(snapshot: MetricsSnapshot) -> str:
    """Human-readable rendering of the same snapshot."""
    perf = snapshot.performance
    lines = [
        f"Metrics at {snapshot.timestamp.isoformat()}",
        (
            f"Requests: {perf.request_count} ({perf.error_count} errors), "
            f"avg {perf.average_response_time:.1f} ms, "
            f"p95 {perf.p95_response_time:.1f} ms, p99 {perf.p99_response_time:.1f} ms"
        ),
        f"Active connections: {perf.active_connections}",
    ]
    for agent_type, agent in sorted(snapshot.agents.items()):
        lines.append(
            f"  {agent_type}: {agent.tasks_processed} processed, "
            f"{agent.tasks_successful} ok, {agent.tasks_failed} failed, "
            f"avg {agent.average_execution_time:.1f} ms, queue {agent.queue_length}"
        )
    system = snapshot.system
    lines.append(
        f"Process {system.pid}: up {system.uptime_seconds:.0f} s, "
        f"cpu {system.cpu_seconds:.2f} s, max rss {system.max_rss_bytes // (1024 * 1024)} MiB"
    )
    return "\n".join(lines)
