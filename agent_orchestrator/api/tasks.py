"""HTTP routes for task submission and task introspection."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agent_orchestrator.core.models import RetryPolicy, Task, TaskPriority, TaskStatus
from agent_orchestrator.orchestration.orchestrator import Orchestrator
from agent_orchestrator.runtime import get_orchestrator
from agent_orchestrator.services.task_store import TaskQuery

router = APIRouter(prefix="/tasks", tags=["tasks"])


class RetryPolicyModel(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_ms: int = Field(2000, ge=0)
    timeout_ms: int = Field(300_000, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            timeout_ms=self.timeout_ms,
        )


class TaskSubmitRequest(BaseModel):
    agent_type: str = Field(..., description="Agent type whose pool runs the task")
    task_type: str = Field(..., description="Operation of that agent")
    input: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    delay_ms: int = Field(0, ge=0, description="Delay before the task becomes visible")
    submitter_id: Optional[str] = None
    session_id: Optional[str] = None
    retry_policy: Optional[RetryPolicyModel] = None


class RecurringTaskRequest(BaseModel):
    agent_type: str
    task_type: str
    cron: str = Field(..., description="Five-field cron expression, evaluated in UTC")
    input: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    retry_policy: Optional[RetryPolicyModel] = None


class TaskAccepted(BaseModel):
    task_id: str


class RecurringAccepted(BaseModel):
    repeat_key: str


class TaskResponse(BaseModel):
    id: str
    type: str
    agent_type: str
    priority: TaskPriority
    status: TaskStatus
    assigned_agent_id: Optional[str]
    input: Dict[str, Any]
    output: Optional[Dict[str, Any]]
    error: Optional[str]
    attempts: int
    submitter_id: Optional[str]
    session_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            type=task.type,
            agent_type=task.agent_type,
            priority=task.priority,
            status=task.status,
            assigned_agent_id=task.assigned_agent_id,
            input=task.input,
            output=task.output,
            error=task.error,
            attempts=task.attempts,
            submitter_id=task.submitter_id,
            session_id=task.session_id,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


@router.post("", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_task(
    request: TaskSubmitRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskAccepted:
    policy = request.retry_policy.to_policy() if request.retry_policy else None
    if request.delay_ms:
        task_id = await orchestrator.schedule_task(
            request.agent_type,
            request.task_type,
            request.input,
            request.delay_ms,
            request.priority,
            request.submitter_id,
            session_id=request.session_id,
            retry_policy=policy,
        )
    else:
        task_id = await orchestrator.execute_task(
            request.agent_type,
            request.task_type,
            request.input,
            request.priority,
            request.submitter_id,
            session_id=request.session_id,
            retry_policy=policy,
        )
    return TaskAccepted(task_id=task_id)


@router.post("/recurring", response_model=RecurringAccepted, status_code=status.HTTP_201_CREATED)
async def schedule_recurring(
    request: RecurringTaskRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> RecurringAccepted:
    key = await orchestrator.schedule_recurring_task(
        request.agent_type,
        request.task_type,
        request.input,
        request.cron,
        request.priority,
        request.retry_policy.to_policy() if request.retry_policy else None,
    )
    return RecurringAccepted(repeat_key=key)


@router.get("", response_model=List[TaskResponse])
async def task_history(
    agent_type: Optional[str] = None,
    task_status: Optional[TaskStatus] = Query(None, alias="status"),
    submitter_id: Optional[str] = None,
    session_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[TaskResponse]:
    query = TaskQuery(
        agent_type=agent_type,
        status=task_status,
        submitter_id=submitter_id,
        session_id=session_id,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return [TaskResponse.from_task(task) for task in await orchestrator.get_task_history(query)]


@router.get("/{task_id}", response_model=TaskResponse)
async def task_status(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskResponse:
    task = await orchestrator.get_task_status(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown task")
    return TaskResponse.from_task(task)


@router.post("/{task_id}/retry", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED)
async def retry_task(
    task_id: str,
    agent_type: Optional[str] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskAccepted:
    await orchestrator.retry_task(task_id, agent_type)
    return TaskAccepted(task_id=task_id)
