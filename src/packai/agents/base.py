"""Session-backed agent: turns one task into one ``AgentOutput``."""

from __future__ import annotations

import logging
import re

from packai.errors import AgentFailureError
from packai.models import AgentOutput, Declaration, Task
from packai.orchestration.interfaces import (
    AgentExecutionResult,
    AgentProgress,
    AgentProgressCallback,
    ContextSubset,
)
from packai.orchestration.session import SessionState, SessionStatus
from packai.orchestration.session_manager import SessionManager

logger = logging.getLogger(__name__)

DECLARATIONS_PATTERN = re.compile(
    r"<!--\s*DECLARATIONS\s*([\s\S]*?)-->", re.IGNORECASE
)
NO_CONTEXT_SUMMARY = "No prior context available for this task."

DECLARATION_INSTRUCTIONS = """
## Output Instructions

After completing your response, list any decisions other agents must know about
in this exact format:

<!-- DECLARATIONS
domain:key:value
-->"""


def extract_declarations(output: str) -> list[Declaration]:
    """Parse ``domain:key:value`` lines from a DECLARATIONS comment block.

    Values may contain colons; only the first two separate fields. Lines
    with an empty field are ignored.
    """
    match = DECLARATIONS_PATTERN.search(output)
    if not match:
        return []

    declarations = []
    for line in match.group(1).strip().splitlines():
        parts = line.strip().split(":", 2)
        if len(parts) != 3:
            continue
        domain, key, value = (p.strip() for p in parts)
        if domain and key and value:
            declarations.append(Declaration(domain=domain, key=key, value=value))
    return declarations


def build_context_block(context: ContextSubset) -> str:
    if not context.entries or context.summary == NO_CONTEXT_SUMMARY:
        return ""
    return f"## Shared Project Context\n\n{context.summary}\n"


class SessionAgent:
    """Runs a task through a ``SessionManager`` session for one agent role.

    Subclasses may override ``build_prompt`` and ``parse_output`` to change
    how a role is prompted or how its output is read.
    """

    def __init__(self, role: str, session_manager: SessionManager):
        self.role = role
        self.session_manager = session_manager

    async def execute(
        self,
        task: Task,
        context: ContextSubset,
        on_progress: AgentProgressCallback | None = None,
    ) -> AgentExecutionResult:
        """Execute a task with shared context injected into its prompt.

        Raises:
            AgentFailureError: If the session is cancelled, fails, or
                returns only whitespace.
            NoWorkerAvailableError: If no worker serves this role.
        """
        label = task.label or task.id
        self._emit(
            on_progress,
            task.id,
            "context-enrichment",
            f'Building {self.role} prompt for "{label}"',
        )
        enriched = task.with_prompt(self.build_prompt(task, context))

        session = await self.session_manager.create_session(self.role, enriched)
        self._emit(
            on_progress,
            task.id,
            "session-created",
            f'Session {session.id} created for "{label}"',
        )

        self._emit(
            on_progress, task.id, "streaming", f"{self.role}: streaming response..."
        )
        status = await session.run()

        if status.state == SessionState.CANCELLED:
            raise self._failure(
                "session-cancelled", f'Session cancelled for task "{task.id}"', task, status
            )
        if status.state == SessionState.FAILED:
            message = status.error.message if status.error else "Session failed"
            raise self._failure("session-failed", message, task, status)
        if not status.output.strip():
            raise self._failure(
                "empty-output",
                f'{self.role} produced no output for task "{task.id}"',
                task,
                status,
            )

        self._emit(
            on_progress,
            task.id,
            "post-processing",
            f"Parsing {self.role} output for declarations",
        )
        output = self.parse_output(task.id, status)
        self._emit(on_progress, task.id, "completed", f'{self.role} completed "{label}"')
        return AgentExecutionResult(output=output, session_status=status)

    def build_prompt(self, task: Task, context: ContextSubset) -> str:
        sections = []
        context_block = build_context_block(context)
        if context_block:
            sections.append(context_block)
        sections.append(f"\n---\n## Task\n\n**Task:** {task.label or task.id}\n")
        sections.append(task.prompt)
        sections.append(DECLARATION_INSTRUCTIONS)
        return "\n".join(sections)

    def parse_output(self, task_id: str, status: SessionStatus) -> AgentOutput:
        return AgentOutput(
            task_id=task_id,
            agent=self.role,
            output=status.output,
            declarations=extract_declarations(status.output),
        )

    def _emit(
        self,
        callback: AgentProgressCallback | None,
        task_id: str,
        stage: str,
        message: str,
    ) -> None:
        if callback is None:
            return
        callback(
            AgentProgress(task_id=task_id, agent=self.role, stage=stage, message=message)
        )

    def _failure(
        self, code: str, message: str, task: Task, status: SessionStatus
    ) -> AgentFailureError:
        logger.warning("[%s] %s agent failure (%s): %s", task.id, self.role, code, message)
        return AgentFailureError(code, message, task.id, self.role, status)
