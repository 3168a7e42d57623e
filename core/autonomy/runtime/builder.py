"""
Orchestrator Builder - fluent assembly of an AutonomousOrchestrator.

Each ``with_*`` call records one collaborator or policy change and returns
the builder. Enabling methods imply the matching config flag, so
``with_oracle(verifier)`` also turns the oracle on.
"""

from pathlib import Path
from typing import Any

from autonomy.config import AutonomousConfig, CompletionMode
from autonomy.context.provider import ContextReducer, TokenCounter
from autonomy.context.saturation import SaturationConfig, SaturationMonitor
from autonomy.errors import ConfigError
from autonomy.models.task import TaskExecutor
from autonomy.oracle.verifier import OracleVerifier
from autonomy.resilience.executor import ResilienceSettings
from autonomy.resilience.fallback import FallbackStrategy
from autonomy.runtime.event_bus import EventBus
from autonomy.runtime.hitl import HumanInTheLoop, InterventionPoint
from autonomy.runtime.orchestrator import AutonomousOrchestrator, AutonomousStatus, RequestFactory
from autonomy.settings import OrchestratorSettings
from autonomy.storage.checkpoint_store import CheckpointStore


class OrchestratorBuilder:
    """
    Example:
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(verifier)
            .with_max_iterations(20)
            .with_auto_continue()
            .with_infer_can_continue_from_complete()
            .with_retry(2, delay_ms=250)
            .build()
        )
    """

    def __init__(self) -> None:
        self._changes: dict[str, Any] = {}
        self._base_config = AutonomousConfig()
        self._executor: TaskExecutor | None = None
        self._oracle: OracleVerifier | None = None
        self._fallback_strategy: FallbackStrategy | None = None
        self._resilience: ResilienceSettings | None = None
        self._human_in_the_loop: HumanInTheLoop | None = None
        self._saturation_monitor: SaturationMonitor | None = None
        self._context_reducer: ContextReducer | None = None
        self._token_counter: TokenCounter | None = None
        self._checkpoint_store: CheckpointStore | None = None
        self._request_factory: RequestFactory | None = None
        self._event_bus: EventBus | None = None
        self._session_id: str | None = None

    def _set(self, **changes: Any) -> "OrchestratorBuilder":
        self._changes.update(changes)
        return self

    # === COLLABORATORS ===

    def with_executor(self, executor: TaskExecutor) -> "OrchestratorBuilder":
        self._executor = executor
        return self

    def with_request_factory(self, factory: RequestFactory) -> "OrchestratorBuilder":
        self._request_factory = factory
        return self

    def with_oracle(self, oracle: OracleVerifier) -> "OrchestratorBuilder":
        self._oracle = oracle
        return self._set(enable_oracle=True)

    def with_fallback_strategy(self, strategy: FallbackStrategy) -> "OrchestratorBuilder":
        self._fallback_strategy = strategy
        return self._set(enable_fallback_strategy=True)

    def with_human_in_the_loop(
        self,
        handler: HumanInTheLoop,
        approval_points: set[InterventionPoint] | None = None,
        request_feedback_on_complete: bool = False,
    ) -> "OrchestratorBuilder":
        self._human_in_the_loop = handler
        self._set(
            enable_human_in_the_loop=True,
            request_feedback_on_complete=request_feedback_on_complete,
        )
        if approval_points is not None:
            self._set(required_approval_points=frozenset(approval_points))
        return self

    def with_event_bus(self, event_bus: EventBus) -> "OrchestratorBuilder":
        self._event_bus = event_bus
        return self

    def with_session_id(self, session_id: str) -> "OrchestratorBuilder":
        self._session_id = session_id
        return self

    # === ITERATION POLICY ===

    def with_max_iterations(self, max_iterations: int) -> "OrchestratorBuilder":
        return self._set(max_iterations=max_iterations)

    def with_max_oracle_iterations(self, max_oracle_iterations: int) -> "OrchestratorBuilder":
        return self._set(max_oracle_iterations=max_oracle_iterations)

    def with_completion_mode(self, mode: CompletionMode | str) -> "OrchestratorBuilder":
        return self._set(completion_mode=mode)

    def with_auto_continue(self, prompt_template: str | None = None) -> "OrchestratorBuilder":
        self._set(auto_continue_on_oracle=True)
        if prompt_template is not None:
            self._set(auto_continue_prompt_template=prompt_template)
        return self

    def with_auto_continue_on_incomplete(self, enabled: bool = True) -> "OrchestratorBuilder":
        return self._set(auto_continue_on_incomplete=enabled)

    def with_infer_can_continue_from_complete(self, enabled: bool = True) -> "OrchestratorBuilder":
        return self._set(infer_can_continue_from_complete=enabled)

    def with_confidence_threshold(
        self,
        min_confidence: float = 0.7,
        human_review: float = 0.5,
    ) -> "OrchestratorBuilder":
        return self._set(
            min_confidence_threshold=min_confidence,
            human_review_confidence_threshold=human_review,
        )

    def continue_on_failure(self, enabled: bool = True) -> "OrchestratorBuilder":
        return self._set(continue_on_failure=enabled)

    # === RESILIENCE ===

    def with_retry(self, count: int, delay_ms: int = 1000) -> "OrchestratorBuilder":
        """Retry a failed task ``count`` more times, starting at ``delay_ms``."""
        return self._set(retry_on_failure_count=count, retry_delay_ms=delay_ms)

    def with_resilience(self, settings: ResilienceSettings) -> "OrchestratorBuilder":
        self._resilience = settings
        return self

    # === CONTEXT ===

    def with_context_tracking(
        self,
        enabled: bool = True,
        max_learnings: int | None = None,
    ) -> "OrchestratorBuilder":
        self._set(enable_context_tracking=enabled)
        if max_learnings is not None:
            self._set(max_context_learnings=max_learnings)
        return self

    def with_reflection(self, enabled: bool = True) -> "OrchestratorBuilder":
        return self._set(enable_reflection=enabled)

    def with_saturation_monitor(
        self,
        monitor: SaturationMonitor | SaturationConfig,
    ) -> "OrchestratorBuilder":
        if isinstance(monitor, SaturationConfig):
            monitor = SaturationMonitor(monitor)
        self._saturation_monitor = monitor
        return self

    def with_context_reducer(self, reducer: ContextReducer) -> "OrchestratorBuilder":
        self._context_reducer = reducer
        return self

    def with_token_counter(self, counter: TokenCounter) -> "OrchestratorBuilder":
        self._token_counter = counter
        return self

    # === CHECKPOINTS ===

    def with_checkpointing(self, enabled: bool = True) -> "OrchestratorBuilder":
        return self._set(enable_checkpointing=enabled)

    def with_checkpoint_store(self, store: CheckpointStore | Path | str) -> "OrchestratorBuilder":
        if not isinstance(store, CheckpointStore):
            store = CheckpointStore(Path(store))
        self._checkpoint_store = store
        return self._set(enable_checkpointing=True)

    # === WHOLESALE CONFIG ===

    def with_config(self, config: AutonomousConfig) -> "OrchestratorBuilder":
        """Replace the base config. Later ``with_*`` calls still apply on top."""
        self._base_config = config
        self._changes.clear()
        return self

    def with_settings(self, settings: OrchestratorSettings) -> "OrchestratorBuilder":
        """Apply a loaded settings document (policy, retry backoff, saturation)."""
        self.with_config(settings.to_autonomous_config())
        self._resilience = settings.to_resilience_settings()
        self._saturation_monitor = SaturationMonitor(settings.to_saturation_config())
        return self

    # === BUILD ===

    def build_config(self) -> AutonomousConfig:
        if not self._changes:
            return self._base_config
        try:
            return self._base_config.with_changes(**self._changes)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid orchestrator configuration: {e}") from e

    def build(self) -> AutonomousOrchestrator:
        """
        Raises:
            ConfigError: no executor was given, or the policy is invalid
        """
        if self._executor is None:
            raise ConfigError("An executor is required: call with_executor() before build()")

        return AutonomousOrchestrator(
            executor=self._executor,
            config=self.build_config(),
            oracle=self._oracle,
            fallback_strategy=self._fallback_strategy,
            resilience=self._resilience,
            human_in_the_loop=self._human_in_the_loop,
            saturation_monitor=self._saturation_monitor,
            context_reducer=self._context_reducer,
            token_counter=self._token_counter,
            checkpoint_store=self._checkpoint_store,
            request_factory=self._request_factory,
            event_bus=self._event_bus,
            session_id=self._session_id,
        )

    async def build_and_start(self, prompt: str) -> AutonomousStatus:
        """Build, enqueue ``prompt`` and run to completion."""
        orchestrator = self.build()
        orchestrator.enqueue_prompt(prompt)
        return await orchestrator.start()
