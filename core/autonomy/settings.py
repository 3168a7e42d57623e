"""
Declarative orchestrator settings.

Settings live in a JSON document (by default ``~/.autonomy/settings.json``)
with snake_case keys; unknown keys are ignored so documents can carry
application-specific sections. ``SettingsLoader`` parses and validates the
document and fills missing LLM connection details from the environment.

Example document:
    {
      "llm": {"model": "gpt-4o-mini"},
      "orchestration": {
        "max_iterations": 20,
        "completion_mode": "until_goal_achieved",
        "auto_continue": {"enabled": true},
        "retry": {"count": 2, "delay_ms": 250}
      }
    }
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from autonomy.config import DEFAULT_AUTO_CONTINUE_TEMPLATE, AutonomousConfig, CompletionMode
from autonomy.context.saturation import SaturationConfig
from autonomy.errors import ConfigError, SettingsParseError
from autonomy.models.verdict import OracleConfig
from autonomy.resilience.executor import ResilienceSettings
from autonomy.runtime.hitl import InterventionPoint

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

DEFAULT_SETTINGS_FILE = Path.home() / ".autonomy" / "settings.json"

ENDPOINT_ENV_VARS = ("LLM_ENDPOINT", "OPENAI_BASE_URL")
API_KEY_ENV_VARS = ("LLM_API_KEY", "OPENAI_API_KEY")
MODEL_ENV_VARS = ("LLM_MODEL", "OPENAI_MODEL")


class _Section(BaseModel):
    model_config = {"extra": "ignore"}


class LLMSettings(_Section):
    endpoint: str | None = None
    api_key: str | None = None
    model: str | None = None
    max_output_tokens: int = 200
    temperature: float = 0.7
    timeout_seconds: int = 60


class OracleSettings(_Section):
    enabled: bool = True
    max_iterations: int = 5
    model: str | None = None
    timeout_seconds: float = 30.0
    enable_reflection: bool = False


class ConfidenceSettings(_Section):
    min_threshold: float = 0.7
    human_review_threshold: float = 0.5


class HumanInTheLoopSettings(_Section):
    enabled: bool = False
    auto_approve_on_timeout: bool = True
    request_feedback_on_complete: bool = False
    required_approval_points: list[InterventionPoint] = Field(
        default_factory=lambda: [InterventionPoint.ORACLE_UNCERTAIN]
    )


class ContextSettings(_Section):
    enable_tracking: bool = True
    enable_reflection: bool = True
    max_learnings: int = 10
    max_outputs: int = 5


class AutoContinueSettings(_Section):
    enabled: bool = False
    on_incomplete: bool = False
    infer_can_continue: bool = False
    prompt_template: str = DEFAULT_AUTO_CONTINUE_TEMPLATE


class RetrySettings(_Section):
    count: int = 0
    delay_ms: int = 1000
    enable_fallback: bool = False


class BackoffSettings(_Section):
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0


class SaturationSettings(_Section):
    max_tokens: int = 128_000
    elevated_threshold: float = 60.0
    high_threshold: float = 75.0
    critical_threshold: float = 85.0
    overflow_threshold: float = 95.0
    target_after_eviction: float = 50.0
    auto_trigger_actions: bool = True


class OrchestrationSettings(_Section):
    max_iterations: int = 10
    completion_mode: CompletionMode = CompletionMode.UNTIL_QUEUE_EMPTY
    enable_checkpointing: bool = True
    continue_on_failure: bool = False
    oracle: OracleSettings = Field(default_factory=OracleSettings)
    confidence: ConfidenceSettings = Field(default_factory=ConfidenceSettings)
    human_in_the_loop: HumanInTheLoopSettings = Field(default_factory=HumanInTheLoopSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    auto_continue: AutoContinueSettings = Field(default_factory=AutoContinueSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    saturation: SaturationSettings = Field(default_factory=SaturationSettings)


class DebugSettings(_Section):
    enabled: bool = False
    show_llm_responses: bool = False
    show_token_usage: bool = False
    log_level: str = "INFO"
    log_format: str = "auto"


class OrchestratorSettings(_Section):
    """Root of the settings document."""

    llm: LLMSettings = Field(default_factory=LLMSettings)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    debug: DebugSettings = Field(default_factory=DebugSettings)

    # -----------------------------------------------------------------------
    # Mapping onto runtime objects
    # -----------------------------------------------------------------------

    def to_oracle_config(self) -> OracleConfig:
        oracle = self.orchestration.oracle
        model = oracle.model or self.llm.model
        updates: dict[str, Any] = {
            "timeout_seconds": oracle.timeout_seconds,
            "enable_reflection": oracle.enable_reflection,
        }
        if model:
            updates["model"] = model
        return OracleConfig(**updates)

    def to_autonomous_config(self) -> AutonomousConfig:
        o = self.orchestration
        try:
            return AutonomousConfig(
                max_iterations=o.max_iterations,
                enable_oracle=o.oracle.enabled,
                max_oracle_iterations=o.oracle.max_iterations,
                oracle_config=self.to_oracle_config(),
                completion_mode=o.completion_mode,
                enable_checkpointing=o.enable_checkpointing,
                continue_on_failure=o.continue_on_failure,
                min_confidence_threshold=o.confidence.min_threshold,
                human_review_confidence_threshold=o.confidence.human_review_threshold,
                auto_continue_on_oracle=o.auto_continue.enabled,
                auto_continue_on_incomplete=o.auto_continue.on_incomplete,
                infer_can_continue_from_complete=o.auto_continue.infer_can_continue,
                auto_continue_prompt_template=o.auto_continue.prompt_template,
                retry_on_failure_count=o.retry.count,
                retry_delay_ms=o.retry.delay_ms,
                enable_fallback_strategy=o.retry.enable_fallback,
                enable_context_tracking=o.context.enable_tracking,
                enable_reflection=o.context.enable_reflection,
                max_context_learnings=o.context.max_learnings,
                enable_human_in_the_loop=o.human_in_the_loop.enabled,
                required_approval_points=frozenset(o.human_in_the_loop.required_approval_points),
                request_feedback_on_complete=o.human_in_the_loop.request_feedback_on_complete,
                auto_approve_on_timeout=o.human_in_the_loop.auto_approve_on_timeout,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def to_resilience_settings(self) -> ResilienceSettings:
        o = self.orchestration
        try:
            return ResilienceSettings(
                max_retries=o.retry.count + 1,
                initial_delay_ms=o.retry.delay_ms,
                backoff_multiplier=o.backoff.multiplier,
                max_delay_seconds=o.backoff.max_delay_seconds,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def to_saturation_config(self) -> SaturationConfig:
        return SaturationConfig(**self.orchestration.saturation.model_dump())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class SettingsLoader:
    """Parses settings documents. Failures are fatal at load time."""

    def load_from_string(self, text: str) -> OrchestratorSettings:
        """
        Raises:
            SettingsParseError: malformed JSON (with line and column)
            ConfigError: document does not match the schema
        """
        if not text.strip():
            return OrchestratorSettings()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SettingsParseError(f"Invalid settings JSON: {e.msg}", e.lineno, e.colno) from e

        if not isinstance(data, dict):
            raise ConfigError("Settings document must be a JSON object")

        try:
            return OrchestratorSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}") from e

    def load_from_file(self, path: str | Path) -> OrchestratorSettings:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        settings = self.load_from_string(path.read_text(encoding="utf-8-sig"))
        logger.debug(f"Loaded settings from {path}")
        return settings

    def load_with_environment(self, path: str | Path | None = None) -> OrchestratorSettings:
        """Load ``path`` (or the default file, if it exists) and apply
        environment overrides. Missing default file means defaults."""
        if path is not None:
            settings = self.load_from_file(path)
        elif DEFAULT_SETTINGS_FILE.exists():
            settings = self.load_from_file(DEFAULT_SETTINGS_FILE)
        else:
            settings = OrchestratorSettings()
        return apply_environment_overrides(settings)


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def apply_environment_overrides(settings: OrchestratorSettings) -> OrchestratorSettings:
    """Fill unset LLM endpoint, API key and model from the environment.

    Values present in the document always win.
    """
    updates: dict[str, str] = {}
    llm = settings.llm
    for attr, names in (
        ("endpoint", ENDPOINT_ENV_VARS),
        ("api_key", API_KEY_ENV_VARS),
        ("model", MODEL_ENV_VARS),
    ):
        if getattr(llm, attr):
            continue
        value = _first_env(names)
        if value:
            updates[attr] = value

    if not updates:
        return settings
    return settings.model_copy(update={"llm": llm.model_copy(update=updates)})
