"""
Oracle verdict schema.

The oracle judges whether an iteration's output satisfies the goal. Its
verdict is validated with pydantic so that raw JSON from a verifier model
(camelCase keys) and Python callers (snake_case names) produce the same
object.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from autonomy.models.execution_context import (
    IterationLearning,
    LearningType,
    ReflectionInsight,
    ReflectionType,
)

_VERDICT_MODEL_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
    extra="ignore",
)


class TokenUsage(BaseModel):
    """Tokens consumed by the verifier call."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    model_config = _VERDICT_MODEL_CONFIG

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class OracleReflection(BaseModel):
    """Self-critique attached to a verdict."""

    what_worked_well: str | None = None
    what_could_improve: str | None = None
    lessons_learned: str | None = None
    suggested_strategy: str | None = None

    model_config = _VERDICT_MODEL_CONFIG

    def to_learning(self, iteration: int) -> IterationLearning:
        summary = self.lessons_learned or self.what_worked_well or "Reflection captured"
        return IterationLearning(
            iteration=iteration,
            type=LearningType.PATTERN,
            summary=summary,
            details=self.suggested_strategy,
            confidence=0.8,
        )

    def to_insight(self) -> ReflectionInsight:
        summary = self.what_could_improve or self.lessons_learned or "No improvements identified"
        return ReflectionInsight(
            type=ReflectionType.CRITIQUE,
            summary=summary,
            analysis=self.what_worked_well,
            suggested_action=self.suggested_strategy,
        )


class OracleVerdict(BaseModel):
    """
    Judgment of one iteration.

    ``is_complete=True`` is terminal regardless of ``can_continue``.
    """

    is_complete: bool = False
    can_continue: bool = False
    analysis: str = ""
    next_prompt_suggestion: str | None = None
    confidence: float = 0.0
    token_usage: TokenUsage | None = None
    reflection: OracleReflection | None = None

    model_config = _VERDICT_MODEL_CONFIG

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)

    def as_verdict(self) -> OracleVerdict:
        return self

    def with_can_continue(self, can_continue: bool) -> OracleVerdict:
        return self.model_copy(update={"can_continue": can_continue})

    # === FACTORIES ===

    @classmethod
    def error(cls, message: str, allow_continue: bool = True) -> OracleVerdict:
        """Verifier failed; the iteration is treated as incomplete."""
        return cls(
            is_complete=False,
            can_continue=allow_continue,
            analysis=f"Oracle error: {message}",
            confidence=0.0,
        )

    @classmethod
    def goal_achieved(cls, analysis: str, confidence: float = 1.0) -> OracleVerdict:
        return cls(is_complete=True, can_continue=False, analysis=analysis, confidence=confidence)

    @classmethod
    def continue_to_next_iteration(cls, analysis: str) -> OracleVerdict:
        return cls(is_complete=False, can_continue=True, analysis=analysis, confidence=0.5)

    @classmethod
    def retry_with_refined_prompt(cls, refined_prompt: str, analysis: str) -> OracleVerdict:
        return cls(
            is_complete=False,
            can_continue=True,
            analysis=analysis,
            next_prompt_suggestion=refined_prompt,
            confidence=0.3,
        )

    @classmethod
    def stop(cls, reason: str) -> OracleVerdict:
        return cls(is_complete=False, can_continue=False, analysis=reason, confidence=0.0)

    @classmethod
    def progress(
        cls,
        analysis: str,
        confidence: float,
        continue_to_next: bool = True,
    ) -> OracleVerdict:
        return cls(
            is_complete=False,
            can_continue=continue_to_next,
            analysis=analysis,
            confidence=confidence,
        )


class EnhancedOracleVerdict(BaseModel):
    """
    Verdict with goal tracking.

    Embeds the base verdict rather than subclassing it, and exposes the
    base fields as read-only properties so the completion policy handles
    both types the same way.
    """

    verdict: OracleVerdict
    completed_goals: list[str] = Field(default_factory=list)
    remaining_goals: list[str] = Field(default_factory=list)
    confidence_history: dict[int, float] = Field(default_factory=dict)
    context_insights: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = _VERDICT_MODEL_CONFIG

    @property
    def is_complete(self) -> bool:
        return self.verdict.is_complete

    @property
    def can_continue(self) -> bool:
        return self.verdict.can_continue

    @property
    def analysis(self) -> str:
        return self.verdict.analysis

    @property
    def next_prompt_suggestion(self) -> str | None:
        return self.verdict.next_prompt_suggestion

    @property
    def confidence(self) -> float:
        return self.verdict.confidence

    @property
    def token_usage(self) -> TokenUsage | None:
        return self.verdict.token_usage

    @property
    def reflection(self) -> OracleReflection | None:
        return self.verdict.reflection

    def as_verdict(self) -> OracleVerdict:
        return self.verdict

    def with_can_continue(self, can_continue: bool) -> EnhancedOracleVerdict:
        return self.model_copy(update={"verdict": self.verdict.with_can_continue(can_continue)})

    def with_confidence(self, iteration: int, confidence: float) -> EnhancedOracleVerdict:
        """Record the confidence observed at an iteration."""
        history = {**self.confidence_history, iteration: confidence}
        return self.model_copy(update={"confidence_history": history})

    @classmethod
    def from_base(
        cls,
        verdict: OracleVerdict,
        completed_goals: list[str] | None = None,
        remaining_goals: list[str] | None = None,
        iteration: int | None = None,
    ) -> EnhancedOracleVerdict:
        history = {iteration: verdict.confidence} if iteration is not None else {}
        return cls(
            verdict=verdict,
            completed_goals=completed_goals or [],
            remaining_goals=remaining_goals or [],
            confidence_history=history,
        )

    @classmethod
    def goal_achieved(
        cls,
        analysis: str,
        completed_goals: list[str],
        confidence: float = 1.0,
    ) -> EnhancedOracleVerdict:
        return cls(
            verdict=OracleVerdict.goal_achieved(analysis, confidence),
            completed_goals=completed_goals,
        )

    @classmethod
    def continue_with_progress(
        cls,
        analysis: str,
        completed_goals: list[str],
        remaining_goals: list[str],
        confidence: float,
        next_prompt_suggestion: str | None = None,
    ) -> EnhancedOracleVerdict:
        return cls(
            verdict=OracleVerdict(
                is_complete=False,
                can_continue=True,
                analysis=analysis,
                next_prompt_suggestion=next_prompt_suggestion,
                confidence=confidence,
            ),
            completed_goals=completed_goals,
            remaining_goals=remaining_goals,
        )


AnyVerdict = OracleVerdict | EnhancedOracleVerdict


# ---------------------------------------------------------------------------
# Verifier configuration
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = (
    "You are a verification oracle. Judge whether the execution output "
    "satisfies the original request. Respond with JSON only."
)

DEFAULT_USER_PROMPT_TEMPLATE = """Original request:
{original_prompt}

Execution output:
{execution_output}

Context:
{context}

Respond with JSON:
{"isComplete": bool, "canContinue": bool, "analysis": "...", "nextPromptSuggestion": "..." or null, "confidence": 0.0-1.0}"""

DEFAULT_REFLECTION_SYSTEM_PROMPT = (
    "You are a verification oracle that also reflects on the work. Judge "
    "completion, then critique what went well and what to change. "
    "Respond with JSON only."
)

DEFAULT_REFLECTION_USER_PROMPT_TEMPLATE = """Original request:
{original_prompt}

Execution output:
{execution_output}

Context:
{context}

Respond with JSON:
{"isComplete": bool, "canContinue": bool, "analysis": "...", "nextPromptSuggestion": "..." or null, "confidence": 0.0-1.0,
  "reflection": {"whatWorkedWell": "...", "whatCouldImprove": "...", "lessonsLearned": "...", "suggestedStrategy": "..."}}"""


class OracleConfig(BaseModel):
    """Verifier call settings and prompt templates."""

    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    temperature: float = 0.3
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_prompt_template: str = DEFAULT_USER_PROMPT_TEMPLATE
    enable_reflection: bool = False
    reflection_system_prompt: str = DEFAULT_REFLECTION_SYSTEM_PROMPT
    reflection_user_prompt_template: str = DEFAULT_REFLECTION_USER_PROMPT_TEMPLATE
    timeout_seconds: float = 30.0

    model_config = {"frozen": True}

    @property
    def active_system_prompt(self) -> str:
        return self.reflection_system_prompt if self.enable_reflection else self.system_prompt

    @property
    def active_user_prompt_template(self) -> str:
        if self.enable_reflection:
            return self.reflection_user_prompt_template
        return self.user_prompt_template
