"""Plan and agent-output loading from YAML or JSON files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from packai.models import AgentOutput, Plan


def _read_document(path: str | Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    # JSON is a subset of YAML, so one parser handles both
    with open(path) as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}")


def load_plan(path: str | Path) -> Plan:
    """Load an execution plan from a YAML or JSON file.

    Args:
        path: Path to the plan file

    Returns:
        Validated Plan

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If the document is malformed or fails validation
    """
    data = _read_document(path)
    if not isinstance(data, dict):
        raise ValueError(f"Plan file must contain a mapping: {path}")
    return plan_from_dict(data)


def plan_from_dict(data: dict) -> Plan:
    """Validate a plan mapping and build a ``Plan``."""
    errors = validate_plan(data)
    if errors:
        raise ValueError(f"Plan validation failed: {'; '.join(errors)}")
    try:
        return Plan.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Plan validation failed: {e}")


def validate_plan(data: dict) -> list[str]:
    """Structural checks pydantic cannot express.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    phases = data.get("phases")
    if phases is None:
        return ["Missing required field: phases"]
    if not isinstance(phases, list):
        return ["Field 'phases' must be a list"]

    task_ids: set[str] = set()
    dependencies: list[tuple[str, str]] = []
    for i, phase in enumerate(phases):
        prefix = f"Phase {i + 1}"
        if not isinstance(phase, dict):
            errors.append(f"{prefix}: must be an object")
            continue
        if not phase.get("id"):
            errors.append(f"{prefix}: missing 'id'")

        tasks = phase.get("tasks", [])
        if not isinstance(tasks, list):
            errors.append(f"{prefix}: 'tasks' must be a list")
            continue
        for j, task in enumerate(tasks):
            if not isinstance(task, dict) or not task.get("id"):
                errors.append(f"{prefix} task {j + 1}: missing 'id'")
                continue
            task_id = task["id"]
            if task_id in task_ids:
                errors.append(f"Duplicate task ID: {task_id}")
            task_ids.add(task_id)
            for dep in task.get("depends_on", task.get("dependsOn", [])) or []:
                dependencies.append((task_id, dep))

    for task_id, dep in dependencies:
        if dep not in task_ids:
            errors.append(f"Task '{task_id}' depends on unknown task '{dep}'")

    return errors


def load_outputs(path: str | Path) -> list[AgentOutput]:
    """Load a list of agent outputs (for offline conflict detection)."""
    data = _read_document(path)
    if isinstance(data, dict):
        data = data.get("outputs")
    if not isinstance(data, list):
        raise ValueError(f"Outputs file must contain a list of outputs: {path}")
    try:
        return [AgentOutput.model_validate(item) for item in data]
    except ValidationError as e:
        raise ValueError(f"Invalid agent output in {path}: {e}")
