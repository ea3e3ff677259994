"""PackAI error hierarchy.

Every error carries a machine-readable ``code`` and a ``user_message`` that
is safe to show to an end user.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Sequence

if TYPE_CHECKING:
    from packai.orchestration.session import SessionStatus

AgentFailureCode = Literal[
    "session-failed", "session-cancelled", "parse-error", "empty-output"
]


class PackAIError(Exception):
    """Base exception for all PackAI errors."""

    def __init__(
        self,
        code: str,
        message: str,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.user_message = user_message or "Something went wrong. Please try again."


class CycleError(PackAIError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, task_ids: Sequence[str]):
        self.task_ids = list(task_ids)
        super().__init__(
            "dependency-cycle",
            f"Circular dependency detected involving: {', '.join(self.task_ids)}",
            "The plan contains circular task dependencies and cannot be scheduled.",
        )


class NoWorkerAvailableError(PackAIError):
    """Raised when no worker matches an agent role's selector."""

    def __init__(self, agent: str, vendor: str | None = None, family: str | None = None):
        self.agent = agent
        self.vendor = vendor
        self.family = family
        if vendor is None:
            detail = "no worker selector configured"
        else:
            detail = f"vendor: {vendor}" + (f", family: {family}" if family else "")
        super().__init__(
            "no-worker-available",
            f'No worker available for agent "{agent}" ({detail})',
            f"No language model is available for {agent}. Check your model access.",
        )


class SessionNotFoundError(PackAIError):
    """Raised when a session id is unknown to the session manager."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("session-not-found", f"Session not found: {session_id}")


class EngineStateError(PackAIError):
    """Raised when the engine is asked to run while not idle."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(
            "engine-busy",
            f'Engine is already in state "{state}"',
            "An execution is already in progress.",
        )


class AgentFailureError(PackAIError):
    """An agent could not produce usable output for a task."""

    def __init__(
        self,
        agent_code: AgentFailureCode,
        message: str,
        task_id: str,
        agent: str,
        session_status: SessionStatus | None = None,
    ):
        if agent_code == "session-cancelled":
            user_message = "The operation was cancelled."
        elif agent_code == "empty-output":
            user_message = (
                f"Agent {agent} produced no output. Try rephrasing your request."
            )
        else:
            user_message = f"Agent {agent} encountered an error: {message}"

        super().__init__(f"agent-{agent_code}", message, user_message)
        self.agent_code = agent_code
        self.task_id = task_id
        self.agent = agent
        self.session_status = session_status


class AllAgentsExhaustedError(PackAIError):
    """Raised when every fallback agent failed for a task."""

    def __init__(self, task_id: str, tried_agents: Sequence[str]):
        self.task_id = task_id
        self.tried_agents = list(tried_agents)
        tried = ", ".join(self.tried_agents)
        super().__init__(
            "all-agents-exhausted",
            f'All agents exhausted for task "{task_id}": tried {tried}',
            f"All available agents failed for this task. Tried: {tried}.",
        )


class StatePersistenceError(PackAIError):
    """Raised when the checkpoint store fails."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__(
            "state-persistence",
            f"State {operation} failed: {detail}",
            "Progress could not be saved. Execution will continue.",
        )
