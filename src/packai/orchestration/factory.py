"""Wiring of a ready-to-run engine from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from packai.agents import AgentFallbackCoordinator, session_agent_factory
from packai.config import Settings, get_settings

from .checkpoint import ExecutionStateManager, SQLiteStateStore, StateStore
from .engine import ExecutionEngine
from .interfaces import CodeWriter, ContextCoordinator, QualityGateRunner, WorkerProvider
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
    """An engine together with the session manager feeding it."""

    engine: ExecutionEngine
    session_manager: SessionManager
    fallback_coordinator: AgentFallbackCoordinator
    state_manager: ExecutionStateManager

    def dispose(self) -> None:
        self.engine.dispose()
        self.session_manager.dispose()


def build_engine(
    worker_provider: WorkerProvider,
    quality_gate_runner: QualityGateRunner,
    context_coordinator: ContextCoordinator,
    code_writer: CodeWriter,
    settings: Settings | None = None,
    state_store: StateStore | None = None,
) -> EngineRuntime:
    """Build an execution engine configured from settings.

    Args:
        worker_provider: Source of generative workers.
        quality_gate_runner: Checks produced output.
        context_coordinator: Supplies and collects shared context.
        code_writer: Writes files embedded in output.
        settings: Defaults to the cached application settings.
        state_store: Checkpoint store. Defaults to SQLite at
            ``settings.state_db_path``.
    """
    settings = settings or get_settings()

    session_manager = SessionManager(
        worker_provider,
        retry_config=settings.retry_config(),
        availability_cache_ttl=settings.availability_cache_ttl_seconds,
    )
    fallback = AgentFallbackCoordinator(
        session_agent_factory(session_manager),
        fallback_order=settings.fallback_order,
        max_fallback_attempts=settings.max_fallback_attempts,
    )
    if state_store is None:
        state_store = SQLiteStateStore(settings.state_db_path)
    state_manager = ExecutionStateManager(state_store)

    engine = ExecutionEngine(
        config=settings.engine_config(),
        fallback_coordinator=fallback,
        context_coordinator=context_coordinator,
        quality_gate_runner=quality_gate_runner,
        code_writer=code_writer,
        state_manager=state_manager,
    )
    logger.debug(
        "Engine built: fallback order %s, checkpoints in %s",
        fallback.fallback_order,
        type(state_store).__name__,
    )
    return EngineRuntime(engine, session_manager, fallback, state_manager)
