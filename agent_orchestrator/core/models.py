"""Core data models shared across orchestrator components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentType(str, Enum):
    """Domains served by a dedicated agent and worker pool."""

    PRODUCTION_PLANNING = "production_planning"
    INVENTORY_INTELLIGENCE = "inventory_intelligence"
    COMPLIANCE = "compliance"
    CUSTOMER_EXPERIENCE = "customer_experience"
    FINANCIAL_OPERATIONS = "financial_operations"


class AgentStatus(str, Enum):
    """Lifecycle states of an agent."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PROCESSING = "processing"
    ERROR = "error"


class TaskStatus(str, Enum):
    """Lifecycle of the durable task record."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_CODES: Dict[TaskPriority, int] = {
    TaskPriority.URGENT: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 4,
}

_CODE_PRIORITIES: Dict[int, TaskPriority] = {code: prio for prio, code in PRIORITY_CODES.items()}

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


def priority_to_code(priority: Optional[TaskPriority]) -> int:
    """Map a priority to its queue code; lower codes are dequeued first."""
    if priority is None:
        return PRIORITY_CODES[TaskPriority.MEDIUM]
    return PRIORITY_CODES[TaskPriority(priority)]


def code_to_priority(code: int) -> TaskPriority:
    return _CODE_PRIORITIES.get(code, TaskPriority.MEDIUM)


class JobState(str, Enum):
    """Queue-level lifecycle of a job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class RetryPolicy:
    """Retry, backoff and timeout settings carried by a job."""

    max_attempts: int = 3
    backoff_ms: int = 2000
    timeout_ms: int = 300_000

    def backoff_for(self, attempts_made: int) -> int:
        """Exponential backoff: base, 2*base, 4*base ... after each failure."""
        return self.backoff_ms * (2 ** max(0, attempts_made - 1))


@dataclass(slots=True)
class Task:
    """Durable, user-visible unit of work."""

    id: str
    type: str
    agent_type: str
    input: Dict[str, Any]
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def priority_code(self) -> int:
        return priority_to_code(self.priority)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "agent_type": self.agent_type,
            "priority": self.priority.value,
            "status": self.status.value,
            "assigned_agent_id": self.assigned_agent_id,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "attempts": self.attempts,
            "submitter_id": self.submitter_id,
            "session_id": self.session_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(slots=True)
class AgentCapability:
    """Declared operation of an agent; informational only."""

    name: str
    description: str
    required: List[str] = field(default_factory=list)
    optional: List[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentConfig:
    """Model settings handed to task handlers; opaque to the core."""

    model: str
    temperature: float
    max_tokens: int
    system_prompt: str


@dataclass(slots=True)
class ContextEntry:
    timestamp: datetime
    task_id: str
    task_type: str
    relevance: float
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(slots=True)
class AgentMemory:
    short_term: Dict[str, Any] = field(default_factory=dict)
    long_term: Dict[str, Any] = field(default_factory=dict)
    context_history: List[ContextEntry] = field(default_factory=list)


@dataclass(slots=True)
class AgentMetrics:
    tasks_processed: int = 0
    success_rate: float = 100.0
    average_execution_time: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks_processed": self.tasks_processed,
            "success_rate": self.success_rate,
            "average_execution_time": self.average_execution_time,
            "last_error": self.last_error,
            "last_error_time": _iso(self.last_error_time),
        }


@dataclass(slots=True)
class AgentSnapshot:
    """Point-in-time copy of an agent handed to callers."""

    id: str
    type: str
    name: str
    description: str
    status: AgentStatus
    capabilities: List[AgentCapability]
    memory: AgentMemory
    config: AgentConfig
    metrics: AgentMetrics
    healthy: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "capabilities": [cap.name for cap in self.capabilities],
            "short_term_entries": len(self.memory.short_term),
            "context_entries": len(self.memory.context_history),
            "model": self.config.model,
            "metrics": self.metrics.to_dict(),
            "healthy": self.healthy,
        }


@dataclass(slots=True)
class ExecutionContext:
    """Per-execution metadata passed to agents and handlers."""

    task_id: str
    timestamp: datetime = field(default_factory=utc_now)
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None
    attempt: int = 1
    job: Any = None


@dataclass(slots=True)
class AgentResponse:
    """Result of a handler invocation."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
        }


@dataclass(slots=True)
class SystemHealth:
    overall: str
    agents: Dict[str, bool]
    queues: Dict[str, bool]
    database: bool


@dataclass(slots=True)
class OrchestratorStats:
    """Derived snapshot; recomputed on every query and never persisted."""

    agents: Dict[str, AgentMetrics]
    queues: Dict[str, QueueStats]
    system_health: SystemHealth

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agents": {name: metrics.to_dict() for name, metrics in self.agents.items()},
            "queues": {name: stats.to_dict() for name, stats in self.queues.items()},
            "system_health": {
                "overall": self.system_health.overall,
                "agents": dict(self.system_health.agents),
                "queues": dict(self.system_health.queues),
                "database": self.system_health.database,
            },
        }
