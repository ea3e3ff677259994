"""PackAI - coordinates code-generation agents over a task dependency graph."""

__version__ = "0.4.0"

from .config import Settings, get_settings
from .errors import PackAIError
from .models import AgentOutput, Phase, Plan, Task, TaskStatus

__all__ = [
    "AgentOutput",
    "PackAIError",
    "Phase",
    "Plan",
    "Settings",
    "Task",
    "TaskStatus",
    "get_settings",
]
