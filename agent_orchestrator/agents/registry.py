"""Per-agent-type task handler tables."""
from __future__ import annotations

from typing import Callable, Dict, List

from agent_orchestrator.agents.base import TaskHandler


class HandlerRegistry:
    """Maps ``(agent_type, task_type)`` to the handler that performs the work.

    Tables are copied into each agent when it is built, so later
    registrations do not affect running agents.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, TaskHandler]] = {}

    def register(self, agent_type: str, task_type: str, handler: TaskHandler) -> None:
        self._tables.setdefault(agent_type, {})[task_type] = handler

    def handler(self, agent_type: str, task_type: str) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: TaskHandler) -> TaskHandler:
            self.register(agent_type, task_type, fn)
            return fn

        return decorator

    def table(self, agent_type: str) -> Dict[str, TaskHandler]:
        return dict(self._tables.get(agent_type, {}))

    def agent_types(self) -> List[str]:
        return sorted(self._tables)

    def task_types(self, agent_type: str) -> List[str]:
        return sorted(self._tables.get(agent_type, {}))
