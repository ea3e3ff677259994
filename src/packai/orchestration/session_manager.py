"""Session manager: creates, tracks and controls agent sessions."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from packai.errors import NoWorkerAvailableError, SessionNotFoundError
from packai.models import Task

from .events import CancellationTokenSource, EventEmitter
from .interfaces import WorkerProvider, WorkerSelector
from .retry import RetryConfig, resolve_retry_config
from .session import (
    Session,
    SessionEmitters,
    SessionProgress,
    SessionStatus,
)

logger = logging.getLogger(__name__)

AVAILABILITY_CACHE_TTL_SECONDS = 30.0

IdFactory = Callable[[str], str]


@dataclass(frozen=True)
class AgentModelMapping:
    """Worker selector configured for one agent role."""

    vendor: str
    family: str | None = None

    def selector(self) -> WorkerSelector:
        return WorkerSelector(vendor=self.vendor, family=self.family)


DEFAULT_AGENT_MODEL_CONFIG: dict[str, AgentModelMapping] = {
    "claude": AgentModelMapping(vendor="copilot", family="claude-sonnet-4.5"),
    "copilot": AgentModelMapping(vendor="copilot", family="gpt-4o"),
    "codex": AgentModelMapping(vendor="copilot", family="o3-mini"),
}


def counter_id_factory(clock: Callable[[], float] = time.time) -> IdFactory:
    """Build an id factory producing ``<agent>-<n>-<millis>`` ids.

    Each factory owns its own counter, so two managers never share state.
    """
    counter = itertools.count(1)

    def make_id(agent: str) -> str:
        return f"{agent}-{next(counter)}-{int(clock() * 1000)}"

    return make_id


class SessionManager:
    """Creates one ``Session`` per (agent role, task) pair and tracks them.

    Session events are re-exposed through manager-level emitters so callers
    can observe every session without subscribing individually.
    """

    def __init__(
        self,
        worker_provider: WorkerProvider,
        agent_config: dict[str, AgentModelMapping] | None = None,
        retry_config: RetryConfig | dict[str, Any] | None = None,
        id_factory: IdFactory | None = None,
        availability_cache_ttl: float = AVAILABILITY_CACHE_TTL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the session manager.

        Args:
            worker_provider: Source of workers for a selector.
            agent_config: Role to selector mapping. Defaults to
                ``DEFAULT_AGENT_MODEL_CONFIG``.
            retry_config: Retry settings, or a dict of overrides.
            id_factory: Produces a unique session id from an agent role.
            availability_cache_ttl: Seconds an availability probe is reused.
            sleep: Awaitable sleep used for session backoff.
            clock: Wall clock in seconds.
        """
        self.worker_provider = worker_provider
        self.agent_config = dict(agent_config or DEFAULT_AGENT_MODEL_CONFIG)
        if isinstance(retry_config, RetryConfig):
            self.retry_config = retry_config
        else:
            self.retry_config = resolve_retry_config(retry_config)
        self._id_factory = id_factory or counter_id_factory(clock)
        self.availability_cache_ttl = availability_cache_ttl
        self._sleep = sleep
        self._clock = clock

        self._sessions: dict[str, Session] = {}
        self._availability_cache: dict[str, bool] | None = None
        self._availability_checked_at = 0.0
        self._disposed = False

        self.on_session_started: EventEmitter[SessionStatus] = EventEmitter(
            "manager.session_started"
        )
        self.emitters = SessionEmitters(
            on_progress=EventEmitter("manager.session_progress"),
            on_completed=EventEmitter("manager.session_completed"),
            on_failed=EventEmitter("manager.session_failed"),
            on_cancelled=EventEmitter("manager.session_cancelled"),
            on_paused=EventEmitter("manager.session_paused"),
            on_resumed=EventEmitter("manager.session_resumed"),
        )

    # Convenience aliases for the shared emitters
    @property
    def on_session_progress(self) -> EventEmitter[SessionProgress]:
        return self.emitters.on_progress

    @property
    def on_session_completed(self) -> EventEmitter[SessionStatus]:
        return self.emitters.on_completed

    @property
    def on_session_failed(self) -> EventEmitter[SessionStatus]:
        return self.emitters.on_failed

    @property
    def on_session_cancelled(self) -> EventEmitter[SessionStatus]:
        return self.emitters.on_cancelled

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_session(self, agent: str, task: Task) -> Session:
        """Create a session for a task, selecting a worker for the agent role.

        Args:
            agent: Agent role name.
            task: Task to execute.

        Returns:
            The new, still pending, session.

        Raises:
            NoWorkerAvailableError: If the role is unknown or no worker matches.
        """
        mapping = self.agent_config.get(agent)
        if mapping is None:
            raise NoWorkerAvailableError(agent)

        workers = await self.worker_provider.select_workers(mapping.selector())
        if not workers:
            raise NoWorkerAvailableError(agent, mapping.vendor, mapping.family)

        session_id = self._id_factory(agent)
        session = Session(
            session_id=session_id,
            agent=agent,
            task=task,
            worker=workers[0],
            cancellation_source=CancellationTokenSource(),
            emitters=self.emitters,
            retry_config=self.retry_config,
            sleep=self._sleep,
            clock=self._clock,
        )
        self._sessions[session_id] = session
        logger.info("Created session %s for task %s", session_id, task.id)
        self.on_session_started.fire(session.get_status())
        return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_session_status(self, session_id: str) -> SessionStatus:
        return self.get_session(session_id).get_status()

    def get_all_sessions(self) -> list[SessionStatus]:
        return [s.get_status() for s in self._sessions.values()]

    def get_active_sessions(self) -> list[SessionStatus]:
        """Statuses of sessions that are pending, running or paused."""
        return [
            s.get_status() for s in self._sessions.values() if not s.is_terminal
        ]

    # ------------------------------------------------------------------
    # Lifecycle control
    # ------------------------------------------------------------------

    def pause_session(self, session_id: str) -> None:
        self.get_session(session_id).pause()

    def resume_session(self, session_id: str) -> None:
        self.get_session(session_id).resume()

    def cancel_session(self, session_id: str) -> None:
        self.get_session(session_id).cancel()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def check_availability(self) -> dict[str, bool]:
        """Report which agent roles currently have at least one worker.

        Results are cached for ``availability_cache_ttl`` seconds. A probe
        that raises counts as unavailable.
        """
        now = self._clock()
        if (
            self._availability_cache is not None
            and now - self._availability_checked_at < self.availability_cache_ttl
        ):
            return dict(self._availability_cache)

        roles = list(self.agent_config)
        probes = [
            self.worker_provider.select_workers(self.agent_config[role].selector())
            for role in roles
        ]
        results = await asyncio.gather(*probes, return_exceptions=True)

        availability: dict[str, bool] = {}
        for role, result in zip(roles, results):
            if isinstance(result, BaseException):
                logger.warning("Availability probe for %s failed: %s", role, result)
                availability[role] = False
            else:
                availability[role] = len(result) > 0

        self._availability_cache = availability
        self._availability_checked_at = now
        return dict(availability)

    def invalidate_availability_cache(self) -> None:
        self._availability_cache = None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Cancel outstanding sessions and release emitters. Safe to repeat."""
        if self._disposed:
            return
        for session in self._sessions.values():
            if not session.is_terminal:
                session.cancel()
        self._sessions.clear()

        self.on_session_started.dispose()
        for emitter in (
            self.emitters.on_progress,
            self.emitters.on_completed,
            self.emitters.on_failed,
            self.emitters.on_cancelled,
            self.emitters.on_paused,
            self.emitters.on_resumed,
        ):
            emitter.dispose()
        self._disposed = True
