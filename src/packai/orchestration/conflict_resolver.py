"""Output conflict detection and resolution.

Runs after tasks finish and compares what different agents produced. Four
detectors look for disagreements about API contracts, duplicated artifacts,
file contents and explicit declarations. Scheduling conflicts between tasks
that have not run yet live in ``dependency_resolver``.
"""

from __future__ import annotations

import itertools
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Literal, Sequence, Union

from packai.models import AgentOutput

logger = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high"]
DuplicateKind = Literal["component", "function", "endpoint", "model", "generic"]

ARCHITECTURAL_AGENT = "claude"
SNIPPET_LENGTH = 200
FENCE_PROXIMITY = 500

API_ENDPOINT_PATTERN = re.compile(
    r"(GET|POST|PUT|PATCH|DELETE)\s+(/[\w/:.-]+)", re.IGNORECASE
)
EXPORT_PATTERN = re.compile(
    r"export\s+(?:default\s+)?(?:function|const|class)\s+(\w+)", re.IGNORECASE
)
PY_DEFINITION_PATTERN = re.compile(
    r"^(?:async\s+)?(?:def|class)\s+([A-Za-z]\w*)", re.MULTILINE
)
MODEL_PATTERN = re.compile(r"(?:model|table|schema)\s+(\w+)", re.IGNORECASE)
CODE_FENCE_PATTERN = re.compile(r"```\w*\n([\s\S]*?)```")
OUTPUT_PATH_PATTERNS = (
    re.compile(
        r"(?:^|\s)((?:\./|src/|app/|pages/|components/|lib/|utils/|api/|styles/"
        r"|public/|tests?/)[\w/.:-]+\.\w{1,5})",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|[\s,;(])(package\.json|tsconfig\.json|\.env(?:\.local)?"
        r"|next\.config\.\w+|vite\.config\.\w+|tailwind\.config\.\w+"
        r"|prisma/schema\.prisma|pyproject\.toml|setup\.cfg|requirements\.txt)"
        r"(?=[\s,;).:]|$)",
        re.IGNORECASE,
    ),
)

SENSITIVE_ENDPOINTS = ("/api/auth", "/api/users", "/api/login")
SENSITIVE_FILES = (
    "package.json",
    "tsconfig.json",
    ".env",
    "prisma/schema.prisma",
    "pyproject.toml",
)
SENSITIVE_DOMAINS = frozenset({"auth", "api"})


class ConflictType(str, Enum):
    API_CONTRACT = "api-contract"
    DUPLICATE_WORK = "duplicate-work"
    FILE_MERGE = "file-merge"
    CONTRADICTORY_IMPL = "contradictory-impl"


class ResolutionStrategy(str, Enum):
    USE_A = "use-a"
    USE_B = "use-b"
    MERGE = "merge"
    PAUSE_AGENT = "pause-agent"
    FLAG_FOR_REVIEW = "flag-for-review"


# ---------------------------------------------------------------------------
# Conflict variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class APIContractConflict:
    """Two tasks describe the same endpoint differently."""

    id: str
    task_ids: tuple[str, str]
    agents: tuple[str, str]
    description: str
    severity: Severity
    detected_at: datetime
    endpoint: str
    schema_a: str
    schema_b: str
    type: Literal[ConflictType.API_CONTRACT] = ConflictType.API_CONTRACT


@dataclass(frozen=True)
class DuplicateWorkConflict:
    """Two tasks create an artifact with the same name."""

    id: str
    task_ids: tuple[str, str]
    agents: tuple[str, str]
    description: str
    severity: Severity
    detected_at: datetime
    component_name: str
    duplicate_kind: DuplicateKind
    type: Literal[ConflictType.DUPLICATE_WORK] = ConflictType.DUPLICATE_WORK


@dataclass(frozen=True)
class FileMergeConflict:
    """Two tasks produce different content for the same file path."""

    id: str
    task_ids: tuple[str, str]
    agents: tuple[str, str]
    description: str
    severity: Severity
    detected_at: datetime
    file_path: str
    content_a: str
    content_b: str
    merge_markers: str
    type: Literal[ConflictType.FILE_MERGE] = ConflictType.FILE_MERGE


@dataclass(frozen=True)
class ContradictoryImplConflict:
    """Two tasks declare different values for the same ``domain:key``."""

    id: str
    task_ids: tuple[str, str]
    agents: tuple[str, str]
    description: str
    severity: Severity
    detected_at: datetime
    topic: str
    statement_a: str
    statement_b: str
    type: Literal[ConflictType.CONTRADICTORY_IMPL] = ConflictType.CONTRADICTORY_IMPL


OutputConflict = Union[
    APIContractConflict,
    DuplicateWorkConflict,
    FileMergeConflict,
    ContradictoryImplConflict,
]


def _unhandled(conflict: object) -> TypeError:
    return TypeError(f"Unsupported conflict variant: {type(conflict).__name__}")


# ---------------------------------------------------------------------------
# Resolutions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolution:
    conflict_id: str
    strategy: ResolutionStrategy
    resolved_by: Literal["auto", "user"]
    notes: str = ""
    applied_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    winning_task_id: str | None = None
    merged_content: str | None = None
    paused_agent: str | None = None


@dataclass(frozen=True)
class ResolutionOption:
    """One choice offered to a user for a conflict that cannot auto-resolve."""

    label: str
    description: str
    strategy: ResolutionStrategy
    winning_task_id: str | None = None
    merged_content: str | None = None
    paused_agent: str | None = None


@dataclass(frozen=True)
class ResolutionHistoryEntry:
    conflict: OutputConflict
    resolution: Resolution


@dataclass(frozen=True)
class DiffLine:
    kind: Literal["context", "added", "removed"]
    content: str
    line_no: int


@dataclass(frozen=True)
class ConflictDiffView:
    conflict_id: str
    label_a: str
    label_b: str
    lines: list[DiffLine]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def normalize(text: str) -> str:
    """Collapse whitespace and lower-case for comparison."""
    return re.sub(r"\s+", " ", text).strip().lower()


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def build_merge_markers(content_a: str, content_b: str, label_a: str, label_b: str) -> str:
    return "\n".join(
        [f"<<<<<<< {label_a}", content_a, "=======", content_b, f">>>>>>> {label_b}"]
    )


def compute_line_diff(text_a: str, text_b: str) -> list[DiffLine]:
    """Set-based line diff.

    Lines of A are context when B also has them, otherwise removed. Lines of
    B that A lacks follow as added. Order within each side is preserved.
    """
    lines_a = text_a.split("\n")
    lines_b = text_b.split("\n")
    set_a, set_b = set(lines_a), set(lines_b)
    result: list[DiffLine] = []
    line_no = itertools.count(1)

    for line in lines_a:
        kind = "context" if line in set_b else "removed"
        result.append(DiffLine(kind, line, next(line_no)))
    for line in lines_b:
        if line not in set_a:
            result.append(DiffLine("added", line, next(line_no)))
    return result


def extract_api_endpoints(output: str) -> dict[str, str]:
    """Map ``"VERB /path"`` to the text following its last occurrence."""
    endpoints: dict[str, str] = {}
    for match in API_ENDPOINT_PATTERN.finditer(output):
        key = f"{match.group(1).upper()} {match.group(2)}"
        endpoints[key] = output[match.end() : match.end() + SNIPPET_LENGTH].strip()
    return endpoints


def extract_component_names(output: str) -> dict[str, DuplicateKind]:
    """Map exported or defined names to their kind.

    Capitalized names are components, others functions. Model declarations
    override either.
    """
    names: dict[str, DuplicateKind] = {}
    for pattern in (EXPORT_PATTERN, PY_DEFINITION_PATTERN):
        for match in pattern.finditer(output):
            name = match.group(1)
            names[name] = "component" if name[0].isupper() else "function"
    for match in MODEL_PATTERN.finditer(output):
        names[match.group(1)] = "model"
    return names


def extract_file_contents(output: str) -> dict[str, str]:
    """Map each mentioned file path to the nearest code fence after it."""
    mentions: list[tuple[str, int]] = []
    for pattern in OUTPUT_PATH_PATTERNS:
        for match in pattern.finditer(output):
            mentions.append((match.group(1).strip().lower(), match.start()))

    fences = [(m.start(), m.group(1).strip()) for m in CODE_FENCE_PATTERN.finditer(output)]

    contents: dict[str, str] = {}
    for path, position in mentions:
        nearest: str | None = None
        nearest_dist = FENCE_PROXIMITY
        for start, content in fences:
            dist = start - position
            if 0 <= dist < nearest_dist:
                nearest, nearest_dist = content, dist
        if nearest:
            contents[path] = nearest
    return contents


def _pairs(entries: Sequence) -> Iterable[tuple]:
    return itertools.combinations(entries, 2)


@dataclass(frozen=True)
class _Entry:
    task_id: str
    agent: str
    value: str


def counter_conflict_ids(clock: Callable[[], float] = time.time) -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"oc-{next(counter)}-{int(clock() * 1000)}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Detects conflicts between agent outputs and tracks their resolutions.

    Detection is stateless: every call returns a fresh list. The resolution
    history keeps one entry per conflict id.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._next_id = id_factory or counter_conflict_ids()
        self._now = now
        self._history: list[ResolutionHistoryEntry] = []

    def detect_conflicts(self, outputs: Sequence[AgentOutput]) -> list[OutputConflict]:
        if len(outputs) < 2:
            return []
        conflicts: list[OutputConflict] = [
            *self._detect_api_contract(outputs),
            *self._detect_duplicate_work(outputs),
            *self._detect_file_merge(outputs),
            *self._detect_contradictions(outputs),
        ]
        if conflicts:
            logger.debug("Detected %d output conflicts", len(conflicts))
        return conflicts

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def auto_resolve(self, conflict: OutputConflict) -> Resolution | None:
        """Resolve clear-cut conflicts without asking. ``None`` means escalate."""
        if isinstance(conflict, DuplicateWorkConflict):
            agent_a, agent_b = conflict.agents
            if agent_a != agent_b and ARCHITECTURAL_AGENT in conflict.agents:
                winner = conflict.agents.index(ARCHITECTURAL_AGENT)
                return Resolution(
                    conflict_id=conflict.id,
                    strategy=ResolutionStrategy.USE_A if winner == 0 else ResolutionStrategy.USE_B,
                    resolved_by="auto",
                    notes=(
                        f"Auto-resolved: {ARCHITECTURAL_AGENT} (architectural agent) "
                        f'output preferred for "{conflict.component_name}"'
                    ),
                    applied_at=self._now(),
                    winning_task_id=conflict.task_ids[winner],
                )
            if agent_a == agent_b:
                return Resolution(
                    conflict_id=conflict.id,
                    strategy=ResolutionStrategy.USE_B,
                    resolved_by="auto",
                    notes=(
                        f'Auto-resolved: later task "{conflict.task_ids[1]}" '
                        "preferred (same agent)"
                    ),
                    applied_at=self._now(),
                    winning_task_id=conflict.task_ids[1],
                )
            return None

        if isinstance(conflict, ContradictoryImplConflict):
            if conflict.severity != "low":
                return None
            return Resolution(
                conflict_id=conflict.id,
                strategy=ResolutionStrategy.FLAG_FOR_REVIEW,
                resolved_by="auto",
                notes=(
                    f'Auto-flagged: low-severity contradiction on "{conflict.topic}": '
                    f'"{conflict.statement_a}" vs "{conflict.statement_b}"'
                ),
                applied_at=self._now(),
            )

        if isinstance(conflict, (APIContractConflict, FileMergeConflict)):
            return None
        raise _unhandled(conflict)

    def get_user_resolution_options(
        self, conflict: OutputConflict
    ) -> list[ResolutionOption]:
        """Three options: accept A, accept B, and a type-specific third."""
        agent_a, agent_b = conflict.agents
        task_a, task_b = conflict.task_ids

        if isinstance(conflict, APIContractConflict):
            return [
                ResolutionOption(
                    label=f"Use {agent_a}'s schema",
                    description=(
                        f"Accept the API contract defined by {agent_a} ({task_a}) "
                        f"for {conflict.endpoint}"
                    ),
                    strategy=ResolutionStrategy.USE_A,
                    winning_task_id=task_a,
                ),
                ResolutionOption(
                    label=f"Use {agent_b}'s schema",
                    description=(
                        f"Accept the API contract defined by {agent_b} ({task_b}) "
                        f"for {conflict.endpoint}"
                    ),
                    strategy=ResolutionStrategy.USE_B,
                    winning_task_id=task_b,
                ),
                ResolutionOption(
                    label="Flag for manual review",
                    description=(
                        f"Mark the {conflict.endpoint} contract mismatch for manual "
                        "review and merging"
                    ),
                    strategy=ResolutionStrategy.FLAG_FOR_REVIEW,
                ),
            ]

        if isinstance(conflict, DuplicateWorkConflict):
            name = conflict.component_name
            return [
                ResolutionOption(
                    label=f"Keep {agent_a}'s {name}",
                    description=f"Use {agent_a}'s implementation and discard {agent_b}'s",
                    strategy=ResolutionStrategy.USE_A,
                    winning_task_id=task_a,
                ),
                ResolutionOption(
                    label=f"Keep {agent_b}'s {name}",
                    description=f"Use {agent_b}'s implementation and discard {agent_a}'s",
                    strategy=ResolutionStrategy.USE_B,
                    winning_task_id=task_b,
                ),
                ResolutionOption(
                    label=f"Pause {agent_b}",
                    description=f"Pause {agent_b}'s downstream tasks and use {agent_a}'s output",
                    strategy=ResolutionStrategy.PAUSE_AGENT,
                    paused_agent=agent_b,
                ),
            ]

        if isinstance(conflict, FileMergeConflict):
            path = conflict.file_path
            return [
                ResolutionOption(
                    label=f"Use {agent_a}'s version of {path}",
                    description=f"Accept the file content from {agent_a} ({task_a})",
                    strategy=ResolutionStrategy.USE_A,
                    winning_task_id=task_a,
                ),
                ResolutionOption(
                    label=f"Use {agent_b}'s version of {path}",
                    description=f"Accept the file content from {agent_b} ({task_b})",
                    strategy=ResolutionStrategy.USE_B,
                    winning_task_id=task_b,
                ),
                ResolutionOption(
                    label="Merge with conflict markers",
                    description=(
                        f"Insert git-style conflict markers into {path} for manual resolution"
                    ),
                    strategy=ResolutionStrategy.MERGE,
                    merged_content=conflict.merge_markers,
                ),
            ]

        if isinstance(conflict, ContradictoryImplConflict):
            return [
                ResolutionOption(
                    label=f'Accept {agent_a}\'s: "{truncate(conflict.statement_a, 40)}"',
                    description=f"Use {agent_a}'s decision on {conflict.topic}",
                    strategy=ResolutionStrategy.USE_A,
                    winning_task_id=task_a,
                ),
                ResolutionOption(
                    label=f'Accept {agent_b}\'s: "{truncate(conflict.statement_b, 40)}"',
                    description=f"Use {agent_b}'s decision on {conflict.topic}",
                    strategy=ResolutionStrategy.USE_B,
                    winning_task_id=task_b,
                ),
                ResolutionOption(
                    label="Flag for review",
                    description=f'Mark "{conflict.topic}" contradiction for later review',
                    strategy=ResolutionStrategy.FLAG_FOR_REVIEW,
                ),
            ]

        raise _unhandled(conflict)

    def apply_resolution(self, conflict: OutputConflict, resolution: Resolution) -> None:
        """Record a resolution, replacing any earlier one for the same conflict."""
        entry = ResolutionHistoryEntry(conflict=conflict, resolution=resolution)
        for index, existing in enumerate(self._history):
            if existing.conflict.id == conflict.id:
                self._history[index] = entry
                return
        self._history.append(entry)

    def get_history(self) -> list[ResolutionHistoryEntry]:
        return list(self._history)

    def get_resolution_for_conflict(self, conflict_id: str) -> Resolution | None:
        for entry in self._history:
            if entry.conflict.id == conflict_id:
                return entry.resolution
        return None

    def build_diff_view(self, conflict: OutputConflict) -> ConflictDiffView:
        if isinstance(conflict, APIContractConflict):
            text_a, text_b = conflict.schema_a, conflict.schema_b
        elif isinstance(conflict, FileMergeConflict):
            text_a, text_b = conflict.content_a, conflict.content_b
        elif isinstance(conflict, DuplicateWorkConflict):
            text_a = f"[{conflict.agents[0]}] {conflict.component_name}"
            text_b = f"[{conflict.agents[1]}] {conflict.component_name}"
        elif isinstance(conflict, ContradictoryImplConflict):
            text_a, text_b = conflict.statement_a, conflict.statement_b
        else:
            raise _unhandled(conflict)

        return ConflictDiffView(
            conflict_id=conflict.id,
            label_a=f"{conflict.agents[0]} ({conflict.task_ids[0]})",
            label_b=f"{conflict.agents[1]} ({conflict.task_ids[1]})",
            lines=compute_line_diff(text_a, text_b),
        )

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def _detect_api_contract(self, outputs: Sequence[AgentOutput]) -> list[APIContractConflict]:
        by_endpoint: dict[str, list[_Entry]] = {}
        for out in outputs:
            for endpoint, snippet in extract_api_endpoints(out.output).items():
                by_endpoint.setdefault(endpoint, []).append(
                    _Entry(out.task_id, out.agent, snippet)
                )

        conflicts = []
        for endpoint, entries in by_endpoint.items():
            for a, b in _pairs(entries):
                if a.task_id == b.task_id:
                    continue
                norm_a, norm_b = normalize(a.value), normalize(b.value)
                if not norm_a or not norm_b or norm_a == norm_b:
                    continue
                sensitive = any(p in endpoint.lower() for p in SENSITIVE_ENDPOINTS)
                conflicts.append(
                    APIContractConflict(
                        id=self._next_id(),
                        task_ids=(a.task_id, b.task_id),
                        agents=(a.agent, b.agent),
                        description=(
                            f"API contract mismatch for {endpoint}: {a.agent} and "
                            f"{b.agent} define different schemas"
                        ),
                        severity="high" if sensitive else "medium",
                        detected_at=self._now(),
                        endpoint=endpoint,
                        schema_a=a.value,
                        schema_b=b.value,
                    )
                )
        return conflicts

    def _detect_duplicate_work(
        self, outputs: Sequence[AgentOutput]
    ) -> list[DuplicateWorkConflict]:
        # name -> task_id -> entry; the first sighting per task wins
        by_name: dict[str, dict[str, _Entry]] = {}

        def record(name: str, out: AgentOutput, kind: str) -> None:
            by_name.setdefault(name, {}).setdefault(
                out.task_id, _Entry(out.task_id, out.agent, kind)
            )

        for out in outputs:
            for name, kind in extract_component_names(out.output).items():
                record(name, out, kind)
            for endpoint in extract_api_endpoints(out.output):
                record(endpoint, out, "endpoint")

        conflicts = []
        for name, per_task in by_name.items():
            for a, b in _pairs(list(per_task.values())):
                kind = "model" if "model" in (a.value, b.value) else a.value
                conflicts.append(
                    DuplicateWorkConflict(
                        id=self._next_id(),
                        task_ids=(a.task_id, b.task_id),
                        agents=(a.agent, b.agent),
                        description=(
                            f'Duplicate {kind}: "{name}" created by both '
                            f"{a.agent} ({a.task_id}) and {b.agent} ({b.task_id})"
                        ),
                        severity="high" if kind == "model" else "medium",
                        detected_at=self._now(),
                        component_name=name,
                        duplicate_kind=kind,
                    )
                )
        return conflicts

    def _detect_file_merge(self, outputs: Sequence[AgentOutput]) -> list[FileMergeConflict]:
        by_path: dict[str, list[_Entry]] = {}
        for out in outputs:
            for path, content in extract_file_contents(out.output).items():
                by_path.setdefault(path, []).append(_Entry(out.task_id, out.agent, content))

        conflicts = []
        for path, entries in by_path.items():
            for a, b in _pairs(entries):
                if a.task_id == b.task_id or normalize(a.value) == normalize(b.value):
                    continue
                label_a = f"{a.agent} ({a.task_id})"
                label_b = f"{b.agent} ({b.task_id})"
                sensitive = any(f in path.lower() for f in SENSITIVE_FILES)
                conflicts.append(
                    FileMergeConflict(
                        id=self._next_id(),
                        task_ids=(a.task_id, b.task_id),
                        agents=(a.agent, b.agent),
                        description=(
                            f"File conflict in {path}: different content from "
                            f"{a.agent} and {b.agent}"
                        ),
                        severity="high" if sensitive else "medium",
                        detected_at=self._now(),
                        file_path=path,
                        content_a=a.value,
                        content_b=b.value,
                        merge_markers=build_merge_markers(a.value, b.value, label_a, label_b),
                    )
                )
        return conflicts

    def _detect_contradictions(
        self, outputs: Sequence[AgentOutput]
    ) -> list[ContradictoryImplConflict]:
        by_topic: dict[str, list[_Entry]] = {}
        for out in outputs:
            declared = {d.topic: d.value for d in out.declarations}
            for topic, value in declared.items():
                by_topic.setdefault(topic, []).append(_Entry(out.task_id, out.agent, value))

        conflicts = []
        for topic, entries in by_topic.items():
            domain = topic.split(":", 1)[0]
            for a, b in _pairs(entries):
                if a.task_id == b.task_id or a.value.lower() == b.value.lower():
                    continue
                conflicts.append(
                    ContradictoryImplConflict(
                        id=self._next_id(),
                        task_ids=(a.task_id, b.task_id),
                        agents=(a.agent, b.agent),
                        description=(
                            f'Contradictory {topic}: {a.agent} says "{truncate(a.value, 50)}" '
                            f'but {b.agent} says "{truncate(b.value, 50)}"'
                        ),
                        severity="high" if domain in SENSITIVE_DOMAINS else "low",
                        detected_at=self._now(),
                        topic=topic,
                        statement_a=a.value,
                        statement_b=b.value,
                    )
                )
        return conflicts
