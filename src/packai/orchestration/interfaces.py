"""Contracts for collaborators that live outside the orchestration core.

The generative-model transport, quality gates, shared-context store and
file writer are provided by the host application. The core only depends on
the shapes below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Protocol,
    Sequence,
    runtime_checkable,
)

from packai.models import AgentOutput, Task

if TYPE_CHECKING:
    from packai.orchestration.events import CancellationToken
    from packai.orchestration.session import SessionStatus


# ---------------------------------------------------------------------------
# Worker transport
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerSelector:
    """Vendor/family descriptor used to pick a worker for an agent role."""

    vendor: str
    family: str | None = None


@dataclass(frozen=True)
class WorkerMessage:
    role: str
    content: str


class WorkerResponse(Protocol):
    text: AsyncIterator[str]


@runtime_checkable
class Worker(Protocol):
    """A generative model endpoint that streams text."""

    def send_request(
        self,
        messages: Sequence[WorkerMessage],
        options: dict[str, Any],
        token: CancellationToken,
    ) -> Awaitable[WorkerResponse]: ...


class WorkerProvider(Protocol):
    def select_workers(self, selector: WorkerSelector) -> Awaitable[list[Worker]]: ...


# ---------------------------------------------------------------------------
# Agent execution
# ---------------------------------------------------------------------------


@dataclass
class AgentProgress:
    """Stage notification emitted while an agent works on a task."""

    task_id: str
    agent: str
    stage: str
    message: str


AgentProgressCallback = Callable[[AgentProgress], None]


@dataclass
class ContextSubset:
    """Filtered shared context handed to an agent for one task."""

    entries: list[dict[str, Any]] = field(default_factory=list)
    domains: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass
class AgentExecutionResult:
    """What an agent returns after successfully executing a task."""

    output: AgentOutput
    session_status: SessionStatus | None = None


class FallbackExecutor(Protocol):
    def execute_with_fallback(
        self,
        task: Task,
        context: ContextSubset,
        primary_agent: str,
        on_progress: AgentProgressCallback | None = None,
    ) -> Awaitable[AgentExecutionResult]: ...


# ---------------------------------------------------------------------------
# Quality gates, shared context, file writing
# ---------------------------------------------------------------------------


@dataclass
class QualityContext:
    task_id: str
    agent: str
    project_language: str = "python"
    strict_mode: bool = False


@dataclass
class QualityReport:
    passed: bool
    error_count: int = 0
    warning_count: int = 0
    feedback: str = ""


class QualityGateRunner(Protocol):
    def check(self, output: AgentOutput, context: QualityContext) -> QualityReport: ...


class ContextCoordinator(Protocol):
    def get_context_for_task(self, task: Task) -> ContextSubset: ...

    def update_from_agent_output(self, output: AgentOutput) -> None: ...


@dataclass
class CodeWriteResult:
    files_written: list[str] = field(default_factory=list)
    files_skipped: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


class CodeWriter(Protocol):
    def extract_and_write(
        self, workspace_root: str, output: str
    ) -> Awaitable[CodeWriteResult]: ...
