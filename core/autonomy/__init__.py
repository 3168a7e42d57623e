"""
Autonomous execution engine.

Drives a task executor through repeated iterations toward a goal, judging
each output with an oracle verifier and deciding whether to continue,
stop or wait for a human.

    from autonomy import OrchestratorBuilder

    orchestrator = OrchestratorBuilder().with_executor(executor).with_oracle(oracle).build()
    orchestrator.enqueue_prompt("Write the release notes")
    status = await orchestrator.start()
"""

from autonomy.config import AutonomousConfig, CompletionMode
from autonomy.errors import (
    AutonomyError,
    CheckpointError,
    ConfigError,
    ExecutionFailedError,
    OracleError,
    SettingsParseError,
)
from autonomy.models import (
    EnhancedOracleVerdict,
    ExecutionContext,
    OracleConfig,
    OracleVerdict,
    TaskExecutor,
    TaskOutput,
    TaskRequest,
    TaskResult,
)
from autonomy.runtime.builder import OrchestratorBuilder
from autonomy.runtime.event_bus import AutonomousEvent, AutonomousEventType, EventBus
from autonomy.runtime.orchestrator import (
    AutonomousOrchestrator,
    AutonomousState,
    AutonomousStatus,
)
from autonomy.settings import OrchestratorSettings, SettingsLoader

__all__ = [
    "AutonomousConfig",
    "AutonomousEvent",
    "AutonomousEventType",
    "AutonomousOrchestrator",
    "AutonomousState",
    "AutonomousStatus",
    "AutonomyError",
    "CheckpointError",
    "CompletionMode",
    "ConfigError",
    "EnhancedOracleVerdict",
    "EventBus",
    "ExecutionContext",
    "ExecutionFailedError",
    "OracleConfig",
    "OracleError",
    "OracleVerdict",
    "OrchestratorBuilder",
    "OrchestratorSettings",
    "SettingsLoader",
    "SettingsParseError",
    "TaskExecutor",
    "TaskOutput",
    "TaskRequest",
    "TaskResult",
]
