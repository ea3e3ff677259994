"""Agent output models consumed by conflict detection and shared context."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Declaration(BaseModel):
    """An explicit ``domain:key:value`` fact asserted by an agent."""

    domain: str
    key: str
    value: str

    @property
    def topic(self) -> str:
        return f"{self.domain}:{self.key}"


class AgentOutput(BaseModel):
    """Text produced by one completed session for one task."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(validation_alias=AliasChoices("task_id", "taskId"))
    agent: str
    output: str = ""
    declarations: list[Declaration] = Field(default_factory=list)
