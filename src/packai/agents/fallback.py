"""Agent fallback: retry a task on other agent roles when one fails."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from packai.errors import (
    AgentFailureError,
    AllAgentsExhaustedError,
    NoWorkerAvailableError,
)
from packai.models import Task
from packai.orchestration.interfaces import (
    AgentExecutionResult,
    AgentProgressCallback,
    ContextSubset,
)
from packai.orchestration.session_manager import SessionManager

from .base import SessionAgent

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ORDER = ("claude", "copilot", "codex")
DEFAULT_MAX_FALLBACK_ATTEMPTS = 2

AgentFactory = Callable[[str], SessionAgent]


class AgentFallbackCoordinator:
    """Tries the task's primary role first, then the configured fallbacks.

    Agent failures and missing workers move on to the next role.
    Cancellation stops immediately. Any other exception propagates unchanged.
    """

    def __init__(
        self,
        agent_factory: AgentFactory,
        fallback_order: Sequence[str] = DEFAULT_FALLBACK_ORDER,
        max_fallback_attempts: int = DEFAULT_MAX_FALLBACK_ATTEMPTS,
    ):
        self.agent_factory = agent_factory
        self.fallback_order = list(fallback_order)
        self.max_fallback_attempts = max_fallback_attempts

    def build_agent_order(self, primary: str) -> list[str]:
        return [primary] + [role for role in self.fallback_order if role != primary]

    async def execute_with_fallback(
        self,
        task: Task,
        context: ContextSubset,
        primary_agent: str,
        on_progress: AgentProgressCallback | None = None,
    ) -> AgentExecutionResult:
        """Execute ``task`` on the first role that succeeds.

        Raises:
            AgentFailureError: When a session was cancelled.
            AllAgentsExhaustedError: When every attempted role failed.
        """
        order = self.build_agent_order(primary_agent)[: self.max_fallback_attempts + 1]
        tried: list[str] = []

        for role in order:
            tried.append(role)
            try:
                agent = self.agent_factory(role)
                return await agent.execute(task, context, on_progress)
            except AgentFailureError as e:
                if e.agent_code == "session-cancelled":
                    raise
                logger.warning(
                    "[%s] %s failed (%s), trying next agent", task.id, role, e.code
                )
            except NoWorkerAvailableError as e:
                logger.warning("[%s] %s", task.id, e.message)

        raise AllAgentsExhaustedError(task.id, tried)


def session_agent_factory(session_manager: SessionManager) -> AgentFactory:
    """Factory building a plain ``SessionAgent`` for any role."""

    def create(role: str) -> SessionAgent:
        return SessionAgent(role, session_manager)

    return create
