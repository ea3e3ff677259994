"""Agents that execute tasks through sessions, with role fallback."""

from .base import SessionAgent, build_context_block, extract_declarations
from .fallback import AgentFallbackCoordinator, session_agent_factory

__all__ = [
    "AgentFallbackCoordinator",
    "SessionAgent",
    "build_context_block",
    "extract_declarations",
    "session_agent_factory",
]
