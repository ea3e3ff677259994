"""Tests for the session-backed agent and fallback coordination."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeProvider, FakeWorker, make_task

from packai.agents import (
    AgentFallbackCoordinator,
    SessionAgent,
    build_context_block,
    extract_declarations,
    session_agent_factory,
)
from packai.agents.base import NO_CONTEXT_SUMMARY
from packai.errors import (
    AgentFailureError,
    AllAgentsExhaustedError,
    NoWorkerAvailableError,
)
from packai.models import AgentOutput
from packai.orchestration.interfaces import AgentExecutionResult, ContextSubset
from packai.orchestration.session_manager import SessionManager

OUTPUT_WITH_DECLARATIONS = """Implemented the client.

<!-- DECLARATIONS
api:base_url:http://localhost:8000
auth:strategy:jwt
not a declaration
ui::missing-key
-->
"""


def make_manager(worker):
    return SessionManager(
        FakeProvider(default=worker),
        retry_config={"max_retries": 0},
        sleep=AsyncMock(),
    )


# ---------------------------------------------------------------------------
# Declaration parsing tests
# ---------------------------------------------------------------------------


class TestExtractDeclarations:
    def test_parses_valid_lines(self):
        declarations = extract_declarations(OUTPUT_WITH_DECLARATIONS)
        assert [(d.domain, d.key, d.value) for d in declarations] == [
            ("api", "base_url", "http://localhost:8000"),
            ("auth", "strategy", "jwt"),
        ]

    def test_no_block(self):
        assert extract_declarations("plain output") == []

    def test_case_insensitive_marker(self):
        declarations = extract_declarations("<!-- declarations\ndb:engine:sqlite -->")
        assert declarations[0].topic == "db:engine"


class TestBuildContextBlock:
    def test_empty_entries(self):
        assert build_context_block(ContextSubset(summary="something")) == ""

    def test_no_context_summary(self):
        context = ContextSubset(entries=[{"k": "v"}], summary=NO_CONTEXT_SUMMARY)
        assert build_context_block(context) == ""

    def test_with_entries(self):
        context = ContextSubset(entries=[{"k": "v"}], summary="DB is sqlite")
        assert build_context_block(context) == "## Shared Project Context\n\nDB is sqlite\n"


# ---------------------------------------------------------------------------
# SessionAgent tests
# ---------------------------------------------------------------------------


class TestSessionAgent:
    @pytest.mark.asyncio
    async def test_execute_success(self):
        worker = FakeWorker([OUTPUT_WITH_DECLARATIONS])
        agent = SessionAgent("claude", make_manager(worker))
        stages = []
        task = make_task("t1", label="Build client", prompt="Write the HTTP client")
        context = ContextSubset(entries=[{"k": "v"}], summary="Use httpx")

        result = await agent.execute(task, context, lambda p: stages.append(p.stage))

        assert result.output.task_id == "t1"
        assert result.output.agent == "claude"
        assert len(result.output.declarations) == 2
        assert result.session_status.state.value == "completed"
        assert stages == [
            "context-enrichment",
            "session-created",
            "streaming",
            "post-processing",
            "completed",
        ]
        prompt = worker.calls[0][0].content
        assert "## Shared Project Context\n\nUse httpx" in prompt
        assert "**Task:** Build client" in prompt
        assert "Write the HTTP client" in prompt
        assert "<!-- DECLARATIONS" in prompt

    @pytest.mark.asyncio
    async def test_task_not_mutated(self):
        agent = SessionAgent("claude", make_manager(FakeWorker(["done"])))
        task = make_task("t1", prompt="original")
        await agent.execute(task, ContextSubset())
        assert task.prompt == "original"

    @pytest.mark.asyncio
    async def test_failed_session(self):
        class OffTopic(Exception):
            code = "off_topic"

        agent = SessionAgent("claude", make_manager(FakeWorker(OffTopic("refused"))))
        with pytest.raises(AgentFailureError) as exc_info:
            await agent.execute(make_task("t1"), ContextSubset())
        assert exc_info.value.agent_code == "session-failed"
        assert exc_info.value.code == "agent-session-failed"
        assert exc_info.value.message == "refused"

    @pytest.mark.asyncio
    async def test_cancelled_session(self):
        agent = SessionAgent("claude", make_manager(FakeWorker(RuntimeError("aborted"))))
        with pytest.raises(AgentFailureError) as exc_info:
            await agent.execute(make_task("t1"), ContextSubset())
        assert exc_info.value.agent_code == "session-cancelled"
        assert exc_info.value.user_message == "The operation was cancelled."

    @pytest.mark.asyncio
    async def test_whitespace_output_is_empty(self):
        agent = SessionAgent("copilot", make_manager(FakeWorker(["  ", "\n"])))
        with pytest.raises(AgentFailureError) as exc_info:
            await agent.execute(make_task("t1"), ContextSubset())
        assert exc_info.value.agent_code == "empty-output"

    @pytest.mark.asyncio
    async def test_no_worker(self):
        manager = SessionManager(FakeProvider(), sleep=AsyncMock())
        agent = SessionAgent("claude", manager)
        with pytest.raises(NoWorkerAvailableError):
            await agent.execute(make_task("t1"), ContextSubset())


# ---------------------------------------------------------------------------
# Fallback tests
# ---------------------------------------------------------------------------


def fake_agents(**behaviours):
    """Agent factory whose agents return or raise per role."""
    agents = {}
    for role, behaviour in behaviours.items():
        agent = MagicMock()
        agent.execute = AsyncMock(side_effect=behaviour)
        agents[role] = agent
    return agents, lambda role: agents[role]


def success(role):
    async def run(task, context, on_progress):
        return AgentExecutionResult(output=AgentOutput(task_id=task.id, agent=role, output="ok"))

    return run


def agent_failure(role, code="session-failed"):
    return AgentFailureError(code, "boom", "t1", role)


class TestAgentFallbackCoordinator:
    def test_build_agent_order(self):
        coordinator = AgentFallbackCoordinator(lambda role: None)
        assert coordinator.build_agent_order("copilot") == ["copilot", "claude", "codex"]
        assert coordinator.build_agent_order("other") == [
            "other",
            "claude",
            "copilot",
            "codex",
        ]

    @pytest.mark.asyncio
    async def test_primary_success(self):
        agents, factory = fake_agents(claude=success("claude"))
        coordinator = AgentFallbackCoordinator(factory)

        result = await coordinator.execute_with_fallback(
            make_task("t1"), ContextSubset(), "claude"
        )

        assert result.output.agent == "claude"

    @pytest.mark.asyncio
    async def test_falls_back_on_failure_and_missing_worker(self):
        agents, factory = fake_agents(
            copilot=agent_failure("copilot"),
            claude=NoWorkerAvailableError("claude"),
            codex=success("codex"),
        )
        coordinator = AgentFallbackCoordinator(factory)

        result = await coordinator.execute_with_fallback(
            make_task("t1"), ContextSubset(), "copilot"
        )

        assert result.output.agent == "codex"

    @pytest.mark.asyncio
    async def test_exhausted(self):
        agents, factory = fake_agents(
            claude=agent_failure("claude"),
            copilot=agent_failure("copilot", "empty-output"),
            codex=agent_failure("codex"),
        )
        coordinator = AgentFallbackCoordinator(factory)

        with pytest.raises(AllAgentsExhaustedError) as exc_info:
            await coordinator.execute_with_fallback(make_task("t1"), ContextSubset(), "claude")
        assert exc_info.value.tried_agents == ["claude", "copilot", "codex"]

    @pytest.mark.asyncio
    async def test_attempts_capped(self):
        agents, factory = fake_agents(
            claude=agent_failure("claude"),
            copilot=agent_failure("copilot"),
            codex=success("codex"),
        )
        coordinator = AgentFallbackCoordinator(factory, max_fallback_attempts=1)

        with pytest.raises(AllAgentsExhaustedError) as exc_info:
            await coordinator.execute_with_fallback(make_task("t1"), ContextSubset(), "claude")
        assert exc_info.value.tried_agents == ["claude", "copilot"]
        agents["codex"].execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancellation_stops_fallback(self):
        agents, factory = fake_agents(
            claude=agent_failure("claude", "session-cancelled"),
            copilot=success("copilot"),
        )
        coordinator = AgentFallbackCoordinator(factory)

        with pytest.raises(AgentFailureError):
            await coordinator.execute_with_fallback(make_task("t1"), ContextSubset(), "claude")
        agents["copilot"].execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self):
        agents, factory = fake_agents(claude=KeyError("bug"), copilot=success("copilot"))
        coordinator = AgentFallbackCoordinator(factory)

        with pytest.raises(KeyError):
            await coordinator.execute_with_fallback(make_task("t1"), ContextSubset(), "claude")

    @pytest.mark.asyncio
    async def test_session_agent_factory_end_to_end(self):
        manager = make_manager(FakeWorker(["generated"]))
        coordinator = AgentFallbackCoordinator(session_agent_factory(manager))

        result = await coordinator.execute_with_fallback(
            make_task("t1"), ContextSubset(), "codex"
        )

        assert result.output.output == "generated"
        assert result.output.agent == "codex"
