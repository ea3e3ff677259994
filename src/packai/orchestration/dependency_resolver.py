"""Dependency analysis and parallel batch scheduling for plan tasks.

Pure functions over task lists: topological ordering with cycle detection,
grouping into parallel batches that respect dependency edges, file overlap
and parallelizability, and recomputation of ready/blocked/unreachable sets
from current task statuses.
"""

from __future__ import annotations

import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Literal, Sequence

from packai.errors import CycleError
from packai.models import Plan, Task, TaskStatus

# Explicit directory-prefixed paths and well-known root config files.
FILE_PATH_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:^|\s)((?:\./|src/|app/|pages/|components/|lib/|utils/|api/|styles/"
        r"|public/|tests?/)\S+\.\w{1,5})",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|[\s,;(])(package\.json|tsconfig\.json|\.env(?:\.local)?"
        r"|next\.config\.\w+|vite\.config\.\w+|tailwind\.config\.\w+"
        r"|prisma/schema\.prisma|pyproject\.toml|setup\.cfg|requirements\.txt)"
        r"(?=[\s,;).]|$)",
        re.IGNORECASE,
    ),
)

_DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})

_DOT_COLORS = {
    TaskStatus.PENDING: "white",
    TaskStatus.RUNNING: "lightyellow",
    TaskStatus.COMPLETED: "lightgreen",
    TaskStatus.FAILED: "lightcoral",
    TaskStatus.SKIPPED: "lightgray",
}


def extract_file_paths(task: Task) -> set[str]:
    """Lower-cased file paths mentioned in a task's label and prompt."""
    text = f"{task.label} {task.prompt}"
    paths: set[str] = set()
    for pattern in FILE_PATH_PATTERNS:
        for match in pattern.finditer(text):
            paths.add(match.group(1).strip().lower())
    return paths


def _first_overlap(paths_a: Iterable[str], paths_b: set[str]) -> str | None:
    for path in sorted(paths_a):
        if path in paths_b:
            return path
    return None


def find_unreachable(tasks: Sequence[Task]) -> set[str]:
    """Ids of tasks transitively depending on a failed task.

    Breadth-first over the reverse dependency graph starting from every
    failed task. Failed tasks themselves are never included.
    """
    failed_ids = {t.id for t in tasks if t.status == TaskStatus.FAILED}
    dependents: dict[str, list[str]] = defaultdict(list)
    for task in tasks:
        for dep in task.depends_on:
            dependents[dep].append(task.id)

    unreachable: set[str] = set()
    queue = deque(failed_ids)
    while queue:
        current = queue.popleft()
        for dependent in dependents.get(current, ()):
            if dependent not in unreachable and dependent not in failed_ids:
                unreachable.add(dependent)
                queue.append(dependent)
    return unreachable


def _fmt_minutes(minutes: float) -> str:
    return f"{minutes:g}"


@dataclass
class ExecutionBatch:
    """Tasks that can run concurrently. Duration is the longest member's."""

    index: int
    tasks: list[Task]
    estimated_minutes: float

    @property
    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]


@dataclass(frozen=True)
class SchedulingConflict:
    """A reason two tasks cannot share a batch."""

    task_a: str
    task_b: str
    reason: str
    type: Literal["dependency", "file"]


@dataclass(frozen=True)
class BlockedTask:
    task: Task
    waiting_on: list[str]


@dataclass
class ScheduleSnapshot:
    """Partition of tasks by readiness. Pending tasks land in exactly one of
    ``ready``, ``blocked`` or ``unreachable``."""

    ready: list[Task] = field(default_factory=list)
    blocked: list[BlockedTask] = field(default_factory=list)
    unreachable: list[Task] = field(default_factory=list)
    completed: list[Task] = field(default_factory=list)
    running: list[Task] = field(default_factory=list)
    failed: list[Task] = field(default_factory=list)


class DependencyResolver:
    """Schedules plan tasks from their dependency graph."""

    def flatten_tasks(self, plan: Plan) -> list[Task]:
        return plan.tasks

    def resolve_execution_order(self, plan: Plan) -> list[ExecutionBatch]:
        """Batches for every task in the plan, ignoring phase boundaries."""
        return self.build_batches(self.flatten_tasks(plan))

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_sort(self, tasks: Sequence[Task]) -> list[Task]:
        """Order tasks so every dependency precedes its dependents.

        Kahn's algorithm. Dependencies on ids outside ``tasks`` are ignored.
        Ties keep input order.

        Raises:
            CycleError: Naming the tasks that lie on a dependency cycle.
        """
        task_map = {t.id: t for t in tasks}
        in_degree = {t.id: 0 for t in tasks}
        dependents: dict[str, list[str]] = defaultdict(list)

        for task in tasks:
            for dep in task.depends_on:
                if dep in task_map:
                    dependents[dep].append(task.id)
                    in_degree[task.id] += 1

        queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
        ordered: list[Task] = []
        while queue:
            task_id = queue.popleft()
            ordered.append(task_map[task_id])
            for dependent in dependents[task_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(ordered) != len(task_map):
            raise CycleError(self._cycle_members(tasks, in_degree, dependents))
        return ordered

    @staticmethod
    def _cycle_members(
        tasks: Sequence[Task],
        in_degree: dict[str, int],
        dependents: dict[str, list[str]],
    ) -> list[str]:
        # Kahn leaves cycle members plus everything downstream of them.
        # Peel off nodes with no dependents left in the remainder.
        remaining = {task_id for task_id, degree in in_degree.items() if degree > 0}
        changed = True
        while changed:
            changed = False
            for task_id in list(remaining):
                if not any(d in remaining for d in dependents[task_id]):
                    remaining.discard(task_id)
                    changed = True
        return [t.id for t in tasks if t.id in remaining]

    def build_batches(self, tasks: Sequence[Task]) -> list[ExecutionBatch]:
        """Group tasks into sequential batches of concurrently runnable work.

        A task joins the current batch once all its in-set dependencies sit
        in earlier batches. A non-parallelizable task gets a batch of its own.
        A task whose file paths overlap a path already claimed in the current
        batch waits for a later one.
        """
        ordered = self.topological_sort(tasks)
        in_set = {t.id for t in ordered}
        paths = {t.id: extract_file_paths(t) for t in ordered}
        assigned: set[str] = set()
        batches: list[ExecutionBatch] = []

        while len(assigned) < len(ordered):
            batch: list[Task] = []
            claimed: set[str] = set()

            for task in ordered:
                if task.id in assigned:
                    continue
                if not all(d in assigned or d not in in_set for d in task.depends_on):
                    continue

                if not task.parallelizable:
                    if not batch:
                        batch.append(task)
                        break
                    continue

                if paths[task.id] & claimed:
                    continue

                batch.append(task)
                claimed |= paths[task.id]

            assigned.update(t.id for t in batch)
            batches.append(
                ExecutionBatch(
                    index=len(batches),
                    tasks=batch,
                    estimated_minutes=max(t.estimated_minutes for t in batch),
                )
            )

        return batches

    def can_run_in_parallel(self, task_a: Task, task_b: Task) -> bool:
        if not task_a.parallelizable or not task_b.parallelizable:
            return False
        if task_b.id in task_a.depends_on or task_a.id in task_b.depends_on:
            return False
        return not (extract_file_paths(task_a) & extract_file_paths(task_b))

    def detect_conflicts(self, tasks: Sequence[Task]) -> list[SchedulingConflict]:
        """Every dependency edge and shared file path between task pairs."""
        conflicts: list[SchedulingConflict] = []
        paths = {t.id: extract_file_paths(t) for t in tasks}

        for i, a in enumerate(tasks):
            for b in tasks[i + 1 :]:
                if b.id in a.depends_on:
                    conflicts.append(
                        SchedulingConflict(
                            a.id, b.id, f'"{a.id}" depends on "{b.id}"', "dependency"
                        )
                    )
                if a.id in b.depends_on:
                    conflicts.append(
                        SchedulingConflict(
                            a.id, b.id, f'"{b.id}" depends on "{a.id}"', "dependency"
                        )
                    )
                overlap = _first_overlap(paths[a.id], paths[b.id])
                if overlap:
                    conflicts.append(
                        SchedulingConflict(a.id, b.id, f'Both touch "{overlap}"', "file")
                    )

        return conflicts

    # ------------------------------------------------------------------
    # Dynamic recomputation
    # ------------------------------------------------------------------

    def recompute_schedule(self, tasks: Sequence[Task]) -> ScheduleSnapshot:
        """Partition tasks by readiness from their current statuses.

        Always computed from scratch; callers re-run it after every status
        change.
        """
        task_map = {t.id: t for t in tasks}
        unreachable_ids = find_unreachable(tasks)
        snapshot = ScheduleSnapshot()

        for task in tasks:
            if task.status in _DONE_STATUSES:
                snapshot.completed.append(task)
            elif task.status == TaskStatus.RUNNING:
                snapshot.running.append(task)
            elif task.status == TaskStatus.FAILED:
                snapshot.failed.append(task)
            elif task.id in unreachable_ids:
                snapshot.unreachable.append(task)
            else:
                waiting_on = [
                    dep
                    for dep in task.depends_on
                    if dep in task_map and task_map[dep].status not in _DONE_STATUSES
                ]
                if waiting_on:
                    snapshot.blocked.append(BlockedTask(task, waiting_on))
                else:
                    snapshot.ready.append(task)

        return snapshot

    # ------------------------------------------------------------------
    # Visualization
    # ------------------------------------------------------------------

    def visualize_batches(self, batches: Sequence[ExecutionBatch]) -> str:
        blocks = []
        for batch in batches:
            parallel = " (parallel)" if len(batch.tasks) > 1 else ""
            lines = [
                f"[Batch {batch.index}]{parallel} ~{_fmt_minutes(batch.estimated_minutes)}min"
            ]
            for task in batch.tasks:
                deps = f" (after: {', '.join(task.depends_on)})" if task.depends_on else ""
                status = (
                    f" [{task.status.value}]" if task.status != TaskStatus.PENDING else ""
                )
                lines.append(f"  {task.id}{deps}{status}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def visualize_dot(self, tasks: Sequence[Task]) -> str:
        """Graphviz DOT source with status-coloured nodes."""
        lines = ["digraph dependencies {", "  rankdir=LR;"]
        for task in tasks:
            agent = task.agent[:1].upper()
            lines.append(
                f'  "{task.id}" [label="{task.id}\\n[{agent}] '
                f'~{_fmt_minutes(task.estimated_minutes)}m" '
                f'style=filled fillcolor="{_DOT_COLORS[task.status]}"];'
            )
        for task in tasks:
            for dep in task.depends_on:
                lines.append(f'  "{dep}" -> "{task.id}";')
        lines.append("}")
        return "\n".join(lines)

    def visualize_snapshot(self, snapshot: ScheduleSnapshot) -> str:
        def ids(tasks: Sequence[Task]) -> str:
            return ", ".join(t.id for t in tasks)

        sections = []
        if snapshot.ready:
            sections.append(f"Ready: {ids(snapshot.ready)}")
        if snapshot.running:
            sections.append(f"Running: {ids(snapshot.running)}")
        if snapshot.blocked:
            blocked = "; ".join(
                f"{b.task.id} (waiting: {', '.join(b.waiting_on)})"
                for b in snapshot.blocked
            )
            sections.append(f"Blocked: {blocked}")
        if snapshot.unreachable:
            sections.append(f"Unreachable: {ids(snapshot.unreachable)}")
        if snapshot.completed:
            sections.append(f"Completed: {ids(snapshot.completed)}")
        if snapshot.failed:
            sections.append(f"Failed: {ids(snapshot.failed)}")
        return "\n".join(sections)
