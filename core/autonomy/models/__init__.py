"""Data contracts for the autonomous execution engine."""

from autonomy.models.checkpoint import (
    CheckpointIndex,
    CheckpointSummary,
    ExecutionCheckpoint,
    ExecutionHistoryEntry,
)
from autonomy.models.execution_context import (
    ErrorCategory,
    ErrorResolution,
    ExecutionContext,
    IterationLearning,
    LearningType,
    ReflectionInsight,
    ReflectionType,
)
from autonomy.models.task import (
    OutputCallback,
    TaskExecutor,
    TaskOutput,
    TaskOutputType,
    TaskRequest,
    TaskResult,
    TokenCount,
)
from autonomy.models.verdict import (
    AnyVerdict,
    EnhancedOracleVerdict,
    OracleConfig,
    OracleReflection,
    OracleVerdict,
    TokenUsage,
)

__all__ = [
    "AnyVerdict",
    "CheckpointIndex",
    "CheckpointSummary",
    "EnhancedOracleVerdict",
    "ErrorCategory",
    "ErrorResolution",
    "ExecutionCheckpoint",
    "ExecutionContext",
    "ExecutionHistoryEntry",
    "IterationLearning",
    "LearningType",
    "OracleConfig",
    "OracleReflection",
    "OracleVerdict",
    "OutputCallback",
    "ReflectionInsight",
    "ReflectionType",
    "TaskExecutor",
    "TaskOutput",
    "TaskOutputType",
    "TaskRequest",
    "TaskResult",
    "TokenCount",
    "TokenUsage",
]
