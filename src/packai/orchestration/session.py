"""A single agent session executing one task.

Wraps worker calls with retry logic, stream consumption, pause/resume
buffering and cooperative cancellation. Events are fired into emitters owned
by the ``SessionManager``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from packai.models import Task

from .events import CancellationTokenSource, EventEmitter
from .interfaces import Worker, WorkerMessage
from .retry import (
    ErrorCode,
    RetryConfig,
    SessionError,
    classify_error,
    compute_backoff_delay,
    is_retryable_error,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Session lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)


class PauseState(Enum):
    """Where arriving chunks' progress events go.

    RUNNING emits immediately. BUFFERING queues. FLUSHING drains the queue;
    chunks arriving mid-flush join the queue and are drained in the same pass.
    """

    RUNNING = "running"
    BUFFERING = "buffering"
    FLUSHING = "flushing"


@dataclass(frozen=True)
class SessionProgress:
    """Progress information emitted during a session."""

    session_id: str
    percent: int
    message: str
    tokens_generated: int
    elapsed_ms: int


@dataclass(frozen=True)
class SessionStatus:
    """Full session status snapshot."""

    session_id: str
    agent: str
    task_id: str
    state: SessionState
    progress: SessionProgress | None
    created_at: float
    started_at: float | None
    completed_at: float | None
    error: SessionError | None
    retry_count: int
    output: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "task_id": self.task_id,
            "state": self.state.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error.to_dict() if self.error else None,
            "retry_count": self.retry_count,
            "output_length": len(self.output),
        }


@dataclass
class SessionEmitters:
    """Emitters a session fires into."""

    on_progress: EventEmitter[SessionProgress] = field(
        default_factory=lambda: EventEmitter("session.progress")
    )
    on_completed: EventEmitter[SessionStatus] = field(
        default_factory=lambda: EventEmitter("session.completed")
    )
    on_failed: EventEmitter[SessionStatus] = field(
        default_factory=lambda: EventEmitter("session.failed")
    )
    on_cancelled: EventEmitter[SessionStatus] = field(
        default_factory=lambda: EventEmitter("session.cancelled")
    )
    on_paused: EventEmitter[SessionStatus] = field(
        default_factory=lambda: EventEmitter("session.paused")
    )
    on_resumed: EventEmitter[SessionStatus] = field(
        default_factory=lambda: EventEmitter("session.resumed")
    )


class _TokenCancelled(Exception):
    """Raised inside the stream loop when the cancellation token is set."""

    def __init__(self) -> None:
        super().__init__("cancelled")


class Session:
    """One task's attempt sequence against one worker.

    ``run()`` makes up to ``max_retries + 1`` attempts. Each retried attempt
    starts from empty output; partial text from a failed attempt is dropped.
    """

    def __init__(
        self,
        session_id: str,
        agent: str,
        task: Task,
        worker: Worker,
        cancellation_source: CancellationTokenSource | None = None,
        emitters: SessionEmitters | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ):
        self.id = session_id
        self.agent = agent
        self.task_id = task.id
        self._prompt = task.prompt
        self._worker = worker
        self._cancellation = cancellation_source or CancellationTokenSource()
        self._emitters = emitters or SessionEmitters()
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._rand = rand

        self._state = SessionState.PENDING
        self._output = ""
        self._tokens_generated = 0
        self._retry_count = 0
        self._error: SessionError | None = None
        self._created_at = clock()
        self._started_at: float | None = None
        self._completed_at: float | None = None

        self._pause_state = PauseState.RUNNING
        self._pause_queue: deque[SessionProgress] = deque()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def output(self) -> str:
        return self._output

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def pause_state(self) -> PauseState:
        return self._pause_state

    @property
    def buffered_events(self) -> int:
        return len(self._pause_queue)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def get_status(self) -> SessionStatus:
        """Build a full status snapshot."""
        return SessionStatus(
            session_id=self.id,
            agent=self.agent,
            task_id=self.task_id,
            state=self._state,
            progress=self._build_progress(),
            created_at=self._created_at,
            started_at=self._started_at,
            completed_at=self._completed_at,
            error=self._error,
            retry_count=self._retry_count,
            output=self._output,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self) -> SessionStatus:
        """Execute the session with retry logic and return the final status."""
        if self.is_terminal:
            return self.get_status()

        self._state = SessionState.RUNNING
        self._started_at = self._clock()
        try:
            return await self._run_attempts()
        except asyncio.CancelledError:
            # Task cancellation or a worker raising it: settle as cancelled, then propagate
            self._cancellation.cancel()
            self._handle_cancel()
            raise

    async def _run_attempts(self) -> SessionStatus:
        max_retries = self.retry_config.max_retries

        for attempt in range(max_retries + 1):
            if self._cancellation.token.is_cancellation_requested:
                return self._handle_cancel()

            try:
                await self._execute_request()
            except Exception as err:
                if self._state == SessionState.CANCELLED:
                    return self.get_status()

                session_error = classify_error(err)
                if session_error.code == ErrorCode.CANCELLED:
                    return self._handle_cancel()

                if is_retryable_error(session_error) and attempt < max_retries:
                    self._retry_count = attempt + 1
                    delay_ms = compute_backoff_delay(
                        attempt, self.retry_config, self._rand
                    )
                    logger.info(
                        "Session %s attempt %d failed (%s), retrying in %dms",
                        self.id,
                        attempt + 1,
                        session_error.code.value,
                        delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)
                    self._output = ""
                    self._tokens_generated = 0
                    continue

                return self._handle_failure(session_error)

            if self._state == SessionState.CANCELLED:
                return self.get_status()
            return self._handle_completion()

        # Unreachable: every iteration returns or continues
        return self.get_status()

    # ------------------------------------------------------------------
    # Pause / Resume / Cancel
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Buffer progress events instead of emitting them."""
        if self._state != SessionState.RUNNING:
            return
        self._state = SessionState.PAUSED
        self._pause_state = PauseState.BUFFERING
        self._emitters.on_paused.fire(self.get_status())

    def resume(self) -> None:
        """Flush buffered progress events and continue emitting live."""
        if self._state != SessionState.PAUSED:
            return
        self._pause_state = PauseState.FLUSHING
        self._flush_pause_queue()
        self._state = SessionState.RUNNING
        self._pause_state = PauseState.RUNNING
        self._emitters.on_resumed.fire(self.get_status())

    def cancel(self) -> None:
        """Cancel the session. No-op once terminal."""
        if self.is_terminal:
            return
        self._cancellation.cancel()
        self._handle_cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute_request(self) -> None:
        messages = [WorkerMessage(role="user", content=self._prompt)]
        response = await self._worker.send_request(
            messages, {}, self._cancellation.token
        )

        async for chunk in response.text:
            if self._cancellation.token.is_cancellation_requested:
                raise _TokenCancelled()

            self._output += chunk
            self._tokens_generated += 1
            self._on_chunk()

    def _on_chunk(self) -> None:
        progress = self._build_progress()
        if self._pause_state == PauseState.RUNNING:
            self._emitters.on_progress.fire(progress)
        else:
            self._pause_queue.append(progress)

    def _flush_pause_queue(self) -> None:
        while self._pause_queue:
            self._emitters.on_progress.fire(self._pause_queue.popleft())

    def _build_progress(self) -> SessionProgress:
        if self._state == SessionState.COMPLETED:
            percent = 100
        else:
            percent = min(99, self._tokens_generated)
        since = self._started_at if self._started_at is not None else self._created_at
        return SessionProgress(
            session_id=self.id,
            percent=percent,
            message=f"{self.agent}: generating response...",
            tokens_generated=self._tokens_generated,
            elapsed_ms=int((self._clock() - since) * 1000),
        )

    def _finish(self, state: SessionState) -> None:
        # Progress still queued by a pause is delivered before the terminal event
        if self._pause_queue:
            self._pause_state = PauseState.FLUSHING
            self._flush_pause_queue()
        self._pause_state = PauseState.RUNNING
        self._state = state
        self._completed_at = self._clock()

    def _handle_completion(self) -> SessionStatus:
        self._finish(SessionState.COMPLETED)
        status = self.get_status()
        self._emitters.on_completed.fire(status)
        return status

    def _handle_failure(self, error: SessionError) -> SessionStatus:
        self._error = error
        self._finish(SessionState.FAILED)
        logger.warning(
            "Session %s failed after %d retries: %s",
            self.id,
            self._retry_count,
            error.message,
        )
        status = self.get_status()
        self._emitters.on_failed.fire(status)
        return status

    def _handle_cancel(self) -> SessionStatus:
        if self._state == SessionState.CANCELLED:
            return self.get_status()
        self._error = SessionError(
            code=ErrorCode.CANCELLED,
            message="Session cancelled by user",
            retryable=False,
        )
        self._finish(SessionState.CANCELLED)
        status = self.get_status()
        self._emitters.on_cancelled.fire(status)
        return status
