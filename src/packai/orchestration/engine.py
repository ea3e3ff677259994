"""Execution engine.

Runs a plan phase by phase and batch by batch. Tasks inside a batch execute
concurrently through the fallback coordinator; each finished output goes
through quality gates, updates shared context and has its files written.
Batches are separated by a barrier where results are applied to the plan,
unreachable tasks are skipped and a checkpoint is saved.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from packai.errors import EngineStateError, PackAIError, StatePersistenceError
from packai.models import AgentOutput, Phase, PhaseStatus, Plan, Task, TaskStatus

from .checkpoint import ExecutionStateManager
from .dependency_resolver import DependencyResolver, ExecutionBatch, find_unreachable
from .events import EventEmitter
from .interfaces import (
    AgentProgress,
    CodeWriter,
    CodeWriteResult,
    ContextCoordinator,
    FallbackExecutor,
    QualityContext,
    QualityGateRunner,
    QualityReport,
)

logger = logging.getLogger(__name__)

QUALITY_FEEDBACK_HEADER = "--- QUALITY FEEDBACK (fix these issues) ---"


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class EngineConfig:
    """Engine behaviour switches.

    Attributes:
        workspace_root: Directory generated files are written under.
        max_quality_retries: Re-executions allowed when quality gates report
            errors. The last output is accepted once these run out.
        continue_on_task_failure: Record a failed task and keep going. When
            false, the first task exception aborts the run after its batch.
        enable_checkpoints: Save the plan after each batch and periodically.
        autosave_interval_seconds: Period of the background checkpoint.
    """

    workspace_root: str = "."
    max_quality_retries: int = 2
    continue_on_task_failure: bool = True
    enable_checkpoints: bool = True
    autosave_interval_seconds: float = 30.0


@dataclass(frozen=True)
class EngineEvent:
    state: EngineState
    phase_id: str | None
    completed_tasks: int
    total_tasks: int
    message: str
    timestamp: float


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    success: bool
    output: AgentOutput | None = None
    quality_report: QualityReport | None = None
    files_written: list[str] = field(default_factory=list)
    error: str | None = None
    retry_count: int = 0


@dataclass(frozen=True)
class PhaseCompletion:
    phase_id: str
    status: PhaseStatus


@dataclass(frozen=True)
class ExecutionSummary:
    state: EngineState
    task_results: list[TaskResult]
    total_duration_ms: int
    tasks_completed: int
    tasks_failed: int
    tasks_skipped: int
    files_written: list[str]


class _TaskAborted(Exception):
    """Carries a task's exception out of the batch when failures abort."""

    def __init__(self, result: TaskResult, cause: BaseException):
        super().__init__(result.error)
        self.result = result
        self.cause = cause


class ExecutionEngine:
    """Drives a ``Plan`` to completion.

    Only the engine writes task and phase statuses, and only outside the
    concurrent section of a batch: tasks are marked running before the
    fan-out and receive their final status after every task in the batch
    has returned.
    """

    def __init__(
        self,
        config: EngineConfig,
        fallback_coordinator: FallbackExecutor,
        context_coordinator: ContextCoordinator,
        quality_gate_runner: QualityGateRunner,
        code_writer: CodeWriter,
        state_manager: ExecutionStateManager,
        dependency_resolver: DependencyResolver | None = None,
        log: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.fallback_coordinator = fallback_coordinator
        self.context_coordinator = context_coordinator
        self.quality_gate_runner = quality_gate_runner
        self.code_writer = code_writer
        self.state_manager = state_manager
        self.dependency_resolver = dependency_resolver or DependencyResolver()
        self.log = log or logger
        self._clock = clock

        self._state = EngineState.IDLE
        self._plan: Plan | None = None
        self._plan_id: str | None = None
        self._task_results: dict[str, TaskResult] = {}
        self._start_time = 0.0
        self._resume_event = asyncio.Event()
        self._resume_event.set()

        self.on_state_change: EventEmitter[EngineEvent] = EventEmitter("engine.state")
        self.on_task_complete: EventEmitter[TaskResult] = EventEmitter(
            "engine.task_complete"
        )
        self.on_phase_complete: EventEmitter[PhaseCompletion] = EventEmitter(
            "engine.phase_complete"
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def plan_id(self) -> str | None:
        return self._plan_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, plan: Plan, plan_id: str | None = None) -> ExecutionSummary:
        """Run every pending task in the plan.

        Args:
            plan: Plan to run. Task and phase statuses are updated in place.
            plan_id: Checkpoint identifier. Generated from the template name
                and start time when omitted.

        Raises:
            EngineStateError: If the engine is not idle.
        """
        if self._state != EngineState.IDLE:
            raise EngineStateError(self._state.value)

        self._plan = plan
        self._start_time = self._clock()
        self._plan_id = plan_id or f"{plan.template_name}-{int(self._start_time * 1000)}"
        self._task_results.clear()
        self._set_state(EngineState.RUNNING, "Execution started")

        if self.config.enable_checkpoints:
            self.state_manager.start_autosave(
                self._plan_id, lambda: plan, self.config.autosave_interval_seconds
            )

        try:
            await self._execute_phases(plan)
            if self._state != EngineState.CANCELLED:
                if any(t.status == TaskStatus.FAILED for t in plan.tasks):
                    self._set_state(EngineState.FAILED, "Execution finished with failures")
                else:
                    self._set_state(
                        EngineState.COMPLETED, "All tasks completed successfully"
                    )
        except Exception:
            self.log.exception("Execution of %s aborted", self._plan_id)
            if self._state != EngineState.CANCELLED:
                self._set_state(EngineState.FAILED, "Execution failed with unexpected error")
        finally:
            await self.state_manager.stop_autosave()
            if self.config.enable_checkpoints and self._state == EngineState.COMPLETED:
                try:
                    self.state_manager.clear_checkpoint(self._plan_id)
                except StatePersistenceError as e:
                    self.log.warning("Could not clear checkpoint: %s", e)

        return self._build_summary()

    async def resume_from_checkpoint(self, plan_id: str) -> ExecutionSummary:
        """Load a checkpointed plan and finish it.

        Tasks caught mid-flight are reset to pending. Completed and skipped
        tasks are not run again.
        """
        plan = self.state_manager.load_checkpoint(plan_id)
        if plan is None:
            raise PackAIError(
                "checkpoint-not-found",
                f"No checkpoint for plan {plan_id}",
                "There is no saved progress to resume.",
            )
        for phase in plan.phases:
            for task in phase.tasks:
                if task.status == TaskStatus.RUNNING:
                    task.status = TaskStatus.PENDING
            if phase.status == PhaseStatus.RUNNING:
                phase.status = PhaseStatus.PENDING
        self.log.info("Resuming plan %s from checkpoint", plan_id)
        return await self.execute(plan, plan_id=plan_id)

    def pause(self) -> None:
        """Stop starting new batches. The running batch finishes."""
        if self._state == EngineState.RUNNING:
            self._resume_event.clear()
            self._set_state(EngineState.PAUSED, "Execution paused")

    def resume(self) -> None:
        if self._state == EngineState.PAUSED:
            self._set_state(EngineState.RUNNING, "Execution resumed")
            self._resume_event.set()

    def cancel(self) -> None:
        if self._state in (EngineState.RUNNING, EngineState.PAUSED):
            self._set_state(EngineState.CANCELLED, "Execution cancelled")
            self._resume_event.set()

    def get_partial_results(self) -> list[TaskResult]:
        return list(self._task_results.values())

    def dispose(self) -> None:
        self.state_manager.cancel_autosave()
        self.on_state_change.dispose()
        self.on_task_complete.dispose()
        self.on_phase_complete.dispose()

    # ------------------------------------------------------------------
    # Phases and batches
    # ------------------------------------------------------------------

    async def _execute_phases(self, plan: Plan) -> None:
        for phase in plan.phases:
            if self._state == EngineState.CANCELLED:
                break
            if phase.status == PhaseStatus.COMPLETED:
                continue

            phase.status = PhaseStatus.RUNNING
            self.log.info('Phase "%s" started', phase.label or phase.id)

            await self._execute_phase(plan, phase)

            statuses = [t.status for t in phase.tasks]
            if any(s == TaskStatus.FAILED for s in statuses):
                phase.status = PhaseStatus.FAILED
            elif all(s in (TaskStatus.COMPLETED, TaskStatus.SKIPPED) for s in statuses):
                phase.status = PhaseStatus.COMPLETED
            else:
                # Interrupted by cancellation; stays RUNNING so a resume re-enters it
                break

            self.on_phase_complete.fire(PhaseCompletion(phase.id, phase.status))
            self.log.info('Phase "%s" -> %s', phase.label or phase.id, phase.status.value)

    async def _execute_phase(self, plan: Plan, phase: Phase) -> None:
        batches = self.dependency_resolver.build_batches(phase.tasks)
        for batch in batches:
            if self._state == EngineState.CANCELLED:
                break
            await self._check_pause_point()
            if self._state == EngineState.CANCELLED:
                break
            await self._execute_batch(plan, batch)

    async def _execute_batch(self, plan: Plan, batch: ExecutionBatch) -> None:
        runnable = [t for t in batch.tasks if t.status == TaskStatus.PENDING]
        self.log.info("Batch %d: %d task(s) in parallel", batch.index, len(runnable))

        for task in runnable:
            task.status = TaskStatus.RUNNING
            self._emit_state_change(f'Task "{task.label or task.id}" started')

        outcomes = await asyncio.gather(
            *(self._execute_task(task) for task in runnable), return_exceptions=True
        )

        abort: _TaskAborted | None = None
        for task, outcome in zip(runnable, outcomes):
            if isinstance(outcome, _TaskAborted):
                result = outcome.result
                abort = abort or outcome
            elif isinstance(outcome, BaseException):
                result = TaskResult(task_id=task.id, success=False, error=str(outcome))
            else:
                result = outcome

            task.status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
            self._task_results[task.id] = result
            self._emit_state_change(
                f'Task "{task.label or task.id}" '
                + ("completed" if result.success else "failed")
            )
            self.on_task_complete.fire(result)

        self._mark_unreachable(plan)
        self._checkpoint(plan)

        if abort is not None:
            raise abort.cause

    async def _execute_task(self, task: Task) -> TaskResult:
        """Run one task. Never mutates ``task``."""
        try:
            context = self.context_coordinator.get_context_for_task(task)

            def on_progress(progress: AgentProgress) -> None:
                self.log.info("[%s] %s: %s", task.id, progress.stage, progress.message)

            result = await self.fallback_coordinator.execute_with_fallback(
                task, context, task.agent, on_progress
            )

            quality_context = QualityContext(task_id=task.id, agent=task.agent)
            final_output = result.output
            report = self.quality_gate_runner.check(final_output, quality_context)

            quality_retries = 0
            while (
                not report.passed
                and report.error_count > 0
                and quality_retries < self.config.max_quality_retries
            ):
                quality_retries += 1
                self.log.info(
                    "[%s] Quality gate failed (%d errors), retry %d/%d",
                    task.id,
                    report.error_count,
                    quality_retries,
                    self.config.max_quality_retries,
                )
                feedback_task = task.with_prompt(
                    f"{task.prompt}\n\n{QUALITY_FEEDBACK_HEADER}\n{report.feedback}"
                )
                try:
                    retry = await self.fallback_coordinator.execute_with_fallback(
                        feedback_task, context, task.agent, on_progress
                    )
                except Exception as e:
                    self.log.warning(
                        "[%s] Quality retry failed, keeping previous output: %s",
                        task.id,
                        e,
                    )
                    break
                final_output = retry.output
                report = self.quality_gate_runner.check(final_output, quality_context)

            self.context_coordinator.update_from_agent_output(final_output)

            written = CodeWriteResult()
            try:
                written = await self.code_writer.extract_and_write(
                    self.config.workspace_root, final_output.output
                )
                if written.files_written:
                    self.log.info(
                        "[%s] Wrote %d file(s)", task.id, len(written.files_written)
                    )
            except Exception as e:
                self.log.error("[%s] Code write error: %s", task.id, e)

            return TaskResult(
                task_id=task.id,
                success=True,
                output=final_output,
                quality_report=report,
                files_written=list(written.files_written),
                retry_count=quality_retries,
            )
        except Exception as e:
            self.log.error("[%s] Failed: %s", task.id, e)
            failed = TaskResult(task_id=task.id, success=False, error=str(e))
            if not self.config.continue_on_task_failure:
                raise _TaskAborted(failed, e) from e
            return failed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _check_pause_point(self) -> None:
        if self._state == EngineState.PAUSED:
            await self._resume_event.wait()

    def _mark_unreachable(self, plan: Plan) -> None:
        tasks = plan.tasks
        for task_id in find_unreachable(tasks):
            task = plan.get_task(task_id)
            if task is not None and task.status == TaskStatus.PENDING:
                task.status = TaskStatus.SKIPPED
                self.log.info("[%s] Skipped: depends on failed task", task.id)

    def _checkpoint(self, plan: Plan) -> None:
        if not self.config.enable_checkpoints or self._plan_id is None:
            return
        try:
            self.state_manager.checkpoint(self._plan_id, plan)
        except StatePersistenceError as e:
            self.log.warning("Checkpoint failed: %s", e)

    def _set_state(self, state: EngineState, message: str) -> None:
        self._state = state
        self._emit_state_change(message)

    def _emit_state_change(self, message: str) -> None:
        plan = self._plan
        running_phase = None
        if plan is not None:
            running_phase = next(
                (p.id for p in plan.phases if p.status == PhaseStatus.RUNNING), None
            )
        self.on_state_change.fire(
            EngineEvent(
                state=self._state,
                phase_id=running_phase,
                completed_tasks=sum(1 for r in self._task_results.values() if r.success),
                total_tasks=plan.stats.total_tasks if plan is not None else 0,
                message=message,
                timestamp=self._clock(),
            )
        )

    def _build_summary(self) -> ExecutionSummary:
        """Summarize this run. Counts cover the whole plan, checkpointed work included."""
        results = list(self._task_results.values())
        statuses = [t.status for t in self._plan.tasks] if self._plan is not None else []
        return ExecutionSummary(
            state=self._state,
            task_results=results,
            total_duration_ms=int((self._clock() - self._start_time) * 1000),
            tasks_completed=statuses.count(TaskStatus.COMPLETED),
            tasks_failed=statuses.count(TaskStatus.FAILED),
            tasks_skipped=statuses.count(TaskStatus.SKIPPED),
            files_written=[path for r in results for path in r.files_written],
        )
