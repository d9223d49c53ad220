"""Task handlers backed by a language model."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Dict

from agent_orchestrator.core.models import AgentResponse, ExecutionContext, Task

if TYPE_CHECKING:
    from agent_orchestrator.agents.base import Agent, TaskHandler
    from agent_orchestrator.services.llm_pool import LLMPool


def build_prompt(instructions: str, task: Task, memory: Dict[str, Any]) -> str:
    """Compose the user prompt from the operation's instructions, input and memory."""
    recent = [
        {"task_type": entry.task_type, "relevance": round(entry.relevance, 2)}
        for entry in memory.get("recent_context", [])
    ]
    sections = [
        f"Operation: {task.type}",
        instructions,
        "Input:",
        json.dumps(task.input, indent=2, default=str),
    ]
    if recent or memory.get("long_term"):
        sections += [
            "Agent memory:",
            json.dumps({"recent_context": recent, "long_term": memory.get("long_term", {})}, default=str),
        ]
    sections.append("Respond with a single JSON object.")
    return "\n\n".join(sections)


def llm_task_handler(llm_pool: LLMPool, instructions: str) -> TaskHandler:
    """Build a handler that asks the agent's model to perform ``instructions``."""

    async def handle(agent: Agent, task: Task, context: ExecutionContext) -> AgentResponse:
        prompt = build_prompt(instructions, task, agent.get_relevant_memory())

        async with llm_pool.acquire(agent.config.model) as client:
            response = await client.chat.completions.create(
                model=agent.config.model,
                messages=[
                    {"role": "system", "content": agent.config.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=agent.config.temperature,
                max_tokens=agent.config.max_tokens,
                response_format={"type": "json_object"},
            )

        content = response.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            return AgentResponse(success=False, error=f"Model returned invalid JSON: {exc}")

        usage = getattr(response, "usage", None)
        return AgentResponse(
            success=True,
            data={"result": data, "task_type": task.type},
            metadata={
                "model": agent.config.model,
                "tokens_used": getattr(usage, "total_tokens", None),
                "attempt": context.attempt,
            },
        )

    return handle
