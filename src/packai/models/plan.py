"""Execution plan models: tasks grouped into ordered phases."""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TaskStatus(str, Enum):
    """Lifecycle of a single task inside a plan."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PhaseStatus(str, Enum):
    """Lifecycle of a phase."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Task(BaseModel):
    """A unit of work assigned to one agent role.

    ``depends_on`` lists the ids of tasks that must finish (completed or
    skipped) before this one may start.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    label: str = ""
    prompt: str = ""
    agent: str = "claude"
    depends_on: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("depends_on", "dependsOn"),
    )
    estimated_minutes: float = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("estimated_minutes", "estimatedMinutes"),
    )
    parallelizable: bool = True
    status: TaskStatus = TaskStatus.PENDING

    def with_prompt(self, prompt: str) -> Task:
        """Return a copy of this task carrying a different prompt."""
        return self.model_copy(update={"prompt": prompt})


class Phase(BaseModel):
    """An ordered group of tasks executed before the next phase begins."""

    id: str
    label: str = ""
    description: str = ""
    tasks: list[Task] = Field(default_factory=list)
    status: PhaseStatus = PhaseStatus.PENDING


class PlanStats(BaseModel):
    """Summary counts derived from a plan."""

    total_tasks: int = 0
    tasks_by_agent: dict[str, int] = Field(default_factory=dict)
    parallelizable_tasks: int = 0


class Plan(BaseModel):
    """An ordered list of phases, mutated in place as execution proceeds."""

    model_config = ConfigDict(populate_by_name=True)

    template_name: str = Field(
        default="plan",
        validation_alias=AliasChoices("template_name", "templateName"),
    )
    phases: list[Phase] = Field(default_factory=list)

    @property
    def tasks(self) -> list[Task]:
        """All tasks across phases, in plan order."""
        return [task for phase in self.phases for task in phase.tasks]

    @property
    def stats(self) -> PlanStats:
        tasks = self.tasks
        by_agent: dict[str, int] = {}
        for task in tasks:
            by_agent[task.agent] = by_agent.get(task.agent, 0) + 1
        return PlanStats(
            total_tasks=len(tasks),
            tasks_by_agent=by_agent,
            parallelizable_tasks=sum(1 for t in tasks if t.parallelizable),
        )

    @property
    def estimated_total_minutes(self) -> float:
        return sum(task.estimated_minutes for task in self.tasks)

    def get_task(self, task_id: str) -> Task | None:
        """Get task by ID."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None
