"""Scheduling, session execution, conflict handling and checkpointing."""

from .checkpoint import (
    ExecutionStateManager,
    MemoryStateStore,
    SQLiteStateStore,
    StateStore,
)
from .conflict_resolver import (
    APIContractConflict,
    ConflictDiffView,
    ConflictResolver,
    ConflictType,
    ContradictoryImplConflict,
    DiffLine,
    DuplicateWorkConflict,
    FileMergeConflict,
    OutputConflict,
    Resolution,
    ResolutionHistoryEntry,
    ResolutionOption,
    ResolutionStrategy,
)
from .dependency_resolver import (
    BlockedTask,
    DependencyResolver,
    ExecutionBatch,
    ScheduleSnapshot,
    SchedulingConflict,
    extract_file_paths,
    find_unreachable,
)
from .engine import (
    EngineConfig,
    EngineEvent,
    EngineState,
    ExecutionEngine,
    ExecutionSummary,
    PhaseCompletion,
    TaskResult,
)
from .events import CancellationToken, CancellationTokenSource, EventEmitter
from .loader import load_outputs, load_plan, plan_from_dict
from .retry import (
    ErrorCode,
    RetryConfig,
    SessionError,
    classify_error,
    compute_backoff_delay,
    is_retryable_error,
    resolve_retry_config,
)
from .session import PauseState, Session, SessionProgress, SessionState, SessionStatus
from .session_manager import (
    DEFAULT_AGENT_MODEL_CONFIG,
    AgentModelMapping,
    SessionManager,
)

__all__ = [
    "APIContractConflict",
    "AgentModelMapping",
    "BlockedTask",
    "CancellationToken",
    "CancellationTokenSource",
    "ConflictDiffView",
    "ConflictResolver",
    "ConflictType",
    "ContradictoryImplConflict",
    "DEFAULT_AGENT_MODEL_CONFIG",
    "DependencyResolver",
    "DiffLine",
    "DuplicateWorkConflict",
    "EngineConfig",
    "EngineEvent",
    "EngineState",
    "ErrorCode",
    "EventEmitter",
    "ExecutionBatch",
    "ExecutionEngine",
    "ExecutionStateManager",
    "ExecutionSummary",
    "FileMergeConflict",
    "MemoryStateStore",
    "OutputConflict",
    "PauseState",
    "PhaseCompletion",
    "Resolution",
    "ResolutionHistoryEntry",
    "ResolutionOption",
    "ResolutionStrategy",
    "RetryConfig",
    "SQLiteStateStore",
    "ScheduleSnapshot",
    "SchedulingConflict",
    "Session",
    "SessionError",
    "SessionManager",
    "SessionProgress",
    "SessionState",
    "SessionStatus",
    "StateStore",
    "TaskResult",
    "classify_error",
    "compute_backoff_delay",
    "extract_file_paths",
    "find_unreachable",
    "is_retryable_error",
    "load_outputs",
    "load_plan",
    "plan_from_dict",
    "resolve_retry_config",
]
