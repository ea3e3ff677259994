"""Plan and output data models."""

from .outputs import AgentOutput, Declaration
from .plan import Phase, PhaseStatus, Plan, PlanStats, Task, TaskStatus

__all__ = [
    "AgentOutput",
    "Declaration",
    "Phase",
    "PhaseStatus",
    "Plan",
    "PlanStats",
    "Task",
    "TaskStatus",
]
