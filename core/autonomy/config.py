"""Runtime policy for the orchestrator."""

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from autonomy.errors import ConfigError
from autonomy.models.verdict import OracleConfig
from autonomy.runtime.hitl import InterventionPoint

DEFAULT_AUTO_CONTINUE_TEMPLATE = "Continue with iteration {iteration}"


class CompletionMode(StrEnum):
    """When the control loop considers the whole run finished."""

    UNTIL_QUEUE_EMPTY = "until_queue_empty"
    SINGLE_GOAL = "single_goal"
    UNTIL_GOAL_ACHIEVED = "until_goal_achieved"


@dataclass(frozen=True)
class AutonomousConfig:
    """
    Declarative orchestrator policy.

    Immutable once built. Use ``with_changes`` to derive a modified copy;
    values are validated on every construction.
    """

    max_iterations: int = 10
    enable_oracle: bool = True
    max_oracle_iterations: int = 5
    oracle_config: OracleConfig = field(default_factory=OracleConfig)
    completion_mode: CompletionMode = CompletionMode.UNTIL_QUEUE_EMPTY
    enable_checkpointing: bool = True
    continue_on_failure: bool = False

    # Confidence gating
    min_confidence_threshold: float = 0.7
    human_review_confidence_threshold: float = 0.5

    # Auto-continue
    auto_continue_on_oracle: bool = False
    auto_continue_on_incomplete: bool = False
    infer_can_continue_from_complete: bool = False
    auto_continue_prompt_template: str = DEFAULT_AUTO_CONTINUE_TEMPLATE

    # Retry / fallback
    retry_on_failure_count: int = 0
    retry_delay_ms: int = 1000
    enable_fallback_strategy: bool = False

    # Context tracking
    enable_context_tracking: bool = True
    enable_reflection: bool = True
    max_context_learnings: int = 10

    # Human-in-the-loop
    enable_human_in_the_loop: bool = False
    required_approval_points: frozenset[InterventionPoint] = frozenset(
        {InterventionPoint.ORACLE_UNCERTAIN}
    )
    request_feedback_on_complete: bool = False
    human_approval_timeout_seconds: float = 300.0
    auto_approve_on_timeout: bool = True

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.max_oracle_iterations < 1:
            raise ConfigError(
                f"max_oracle_iterations must be >= 1, got {self.max_oracle_iterations}"
            )
        for name in ("min_confidence_threshold", "human_review_confidence_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be between 0.0 and 1.0, got {value}")
        if self.retry_on_failure_count < 0:
            raise ConfigError(
                f"retry_on_failure_count must be >= 0, got {self.retry_on_failure_count}"
            )
        if self.retry_delay_ms < 0:
            raise ConfigError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")
        if self.max_context_learnings < 1:
            raise ConfigError(
                f"max_context_learnings must be >= 1, got {self.max_context_learnings}"
            )
        if not isinstance(self.completion_mode, CompletionMode):
            try:
                object.__setattr__(self, "completion_mode", CompletionMode(self.completion_mode))
            except ValueError as e:
                raise ConfigError(f"Unknown completion mode: {self.completion_mode}") from e

    @property
    def auto_continue_enabled(self) -> bool:
        return self.auto_continue_on_oracle or self.auto_continue_on_incomplete

    def with_changes(self, **changes: Any) -> "AutonomousConfig":
        return replace(self, **changes)
