"""
Execution Context - immutable accumulator of what a session has learned.

Every ``with_*`` transition returns a new context; the receiver is never
modified, so any snapshot handed out (to a checkpoint, an event handler or
a context reducer) stays valid for replay and debugging.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

MAX_PREVIOUS_OUTPUTS = 5
DEFAULT_MAX_LEARNINGS = 10


class LearningType(StrEnum):
    SUCCESSFUL_APPROACH = "successful_approach"
    FAILED_APPROACH = "failed_approach"
    OPTIMIZATION = "optimization"
    CONSTRAINT = "constraint"
    DEPENDENCY = "dependency"
    PATTERN = "pattern"


class ErrorCategory(StrEnum):
    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    PERMISSION = "permission"
    LOGIC = "logic"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


class ReflectionType(StrEnum):
    QUALITY_ASSESSMENT = "quality_assessment"
    GAP_ANALYSIS = "gap_analysis"
    STRATEGY_ADJUSTMENT = "strategy_adjustment"
    CRITIQUE = "critique"
    IMPROVEMENT = "improvement"


@dataclass(frozen=True)
class IterationLearning:
    """Something learned during an iteration."""

    iteration: int
    type: LearningType
    summary: str
    details: str | None = None
    confidence: float = 1.0
    captured_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ErrorResolution:
    """An error seen during execution and what was done about it."""

    iteration: int
    error_summary: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    resolution_applied: str | None = None
    was_successful: bool = False
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ReflectionInsight:
    """Self-critique produced by the oracle."""

    type: ReflectionType
    summary: str
    analysis: str | None = None
    suggested_action: str | None = None
    confidence: float = 1.0
    generated_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ExecutionContext:
    """
    Everything accumulated across the iterations of one session.

    Collections are tuples so a context can be shared freely between
    concurrent readers. ``learnings`` is bounded by ``max_learnings`` and
    ``previous_outputs`` by ``MAX_PREVIOUS_OUTPUTS``; both evict oldest first.
    """

    session_id: str
    original_goal: str = ""
    current_iteration: int = 0
    current_oracle_iteration: int = 0
    learnings: tuple[IterationLearning, ...] = ()
    error_resolutions: tuple[ErrorResolution, ...] = ()
    previous_outputs: tuple[str, ...] = ()
    human_feedback: tuple[str, ...] = ()
    reflections: tuple[ReflectionInsight, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    max_learnings: int = DEFAULT_MAX_LEARNINGS
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def initial(
        cls,
        session_id: str,
        goal: str = "",
        max_learnings: int = DEFAULT_MAX_LEARNINGS,
    ) -> ExecutionContext:
        return cls(session_id=session_id, original_goal=goal, max_learnings=max_learnings)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _evolve(self, **changes: Any) -> ExecutionContext:
        # Derived contexts never share a metadata dict with their source
        changes.setdefault("metadata", dict(self.metadata))
        return replace(self, updated_at=datetime.now(), **changes)

    def with_goal(self, goal: str) -> ExecutionContext:
        return self._evolve(original_goal=goal)

    def with_next_iteration(self, iteration: int, oracle_iteration: int = 0) -> ExecutionContext:
        return self._evolve(
            current_iteration=iteration,
            current_oracle_iteration=oracle_iteration,
        )

    def with_learning(self, learning: IterationLearning) -> ExecutionContext:
        learnings = (*self.learnings, learning)
        if self.max_learnings > 0 and len(learnings) > self.max_learnings:
            learnings = learnings[-self.max_learnings :]
        return self._evolve(learnings=learnings)

    def with_error_resolution(self, resolution: ErrorResolution) -> ExecutionContext:
        return self._evolve(error_resolutions=(*self.error_resolutions, resolution))

    def with_metadata(self, key: str, value: Any) -> ExecutionContext:
        return self._evolve(metadata={**self.metadata, key: value})

    def with_previous_output(self, output: str) -> ExecutionContext:
        outputs = (*self.previous_outputs, output)[-MAX_PREVIOUS_OUTPUTS:]
        return self._evolve(previous_outputs=outputs)

    def with_human_feedback(self, feedback: str) -> ExecutionContext:
        return self._evolve(human_feedback=(*self.human_feedback, feedback))

    def with_reflection(self, reflection: ReflectionInsight) -> ExecutionContext:
        return self._evolve(reflections=(*self.reflections, reflection))

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def build_summary(self) -> str:
        """Render the recent context as prompt-ready text."""
        lines: list[str] = []

        if self.learnings:
            lines.append("## Previous Learnings")
            for learning in self.learnings[-3:]:
                lines.append(f"  - [{learning.type.value}] {learning.summary}")

        if self.error_resolutions:
            lines.append("## Error Resolutions")
            for resolution in self.error_resolutions[-2:]:
                applied = resolution.resolution_applied or "none"
                lines.append(f"  - Error: {resolution.error_summary} -> Resolution: {applied}")

        if self.human_feedback:
            lines.append("## Human Feedback")
            for feedback in self.human_feedback[-2:]:
                lines.append(f"  - {feedback}")

        if self.reflections:
            lines.append("## Reflections")
            for reflection in self.reflections[-2:]:
                lines.append(f"  - [{reflection.type.value}] {reflection.summary}")

        return "\n".join(lines) if lines else "No prior context."

    def to_dict(self) -> dict[str, Any]:
        """Serializable snapshot for checkpoints and events."""
        return {
            "session_id": self.session_id,
            "original_goal": self.original_goal,
            "current_iteration": self.current_iteration,
            "current_oracle_iteration": self.current_oracle_iteration,
            "learnings": [
                {
                    "iteration": item.iteration,
                    "type": item.type.value,
                    "summary": item.summary,
                    "details": item.details,
                    "confidence": item.confidence,
                }
                for item in self.learnings
            ],
            "error_resolutions": [
                {
                    "iteration": item.iteration,
                    "error_summary": item.error_summary,
                    "category": item.category.value,
                    "resolution_applied": item.resolution_applied,
                    "was_successful": item.was_successful,
                }
                for item in self.error_resolutions
            ],
            "previous_outputs": list(self.previous_outputs),
            "human_feedback": list(self.human_feedback),
            "reflections": [
                {
                    "type": item.type.value,
                    "summary": item.summary,
                    "analysis": item.analysis,
                    "suggested_action": item.suggested_action,
                    "confidence": item.confidence,
                }
                for item in self.reflections
            ],
            "metadata": dict(self.metadata),
            "max_learnings": self.max_learnings,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        """Rebuild a context from ``to_dict`` output (timestamps reset)."""
        return cls(
            session_id=data["session_id"],
            original_goal=data.get("original_goal", ""),
            current_iteration=data.get("current_iteration", 0),
            current_oracle_iteration=data.get("current_oracle_iteration", 0),
            learnings=tuple(
                IterationLearning(
                    iteration=item["iteration"],
                    type=LearningType(item["type"]),
                    summary=item["summary"],
                    details=item.get("details"),
                    confidence=item.get("confidence", 1.0),
                )
                for item in data.get("learnings", [])
            ),
            error_resolutions=tuple(
                ErrorResolution(
                    iteration=item["iteration"],
                    error_summary=item["error_summary"],
                    category=ErrorCategory(item.get("category", ErrorCategory.UNKNOWN)),
                    resolution_applied=item.get("resolution_applied"),
                    was_successful=item.get("was_successful", False),
                )
                for item in data.get("error_resolutions", [])
            ),
            previous_outputs=tuple(data.get("previous_outputs", []))[-MAX_PREVIOUS_OUTPUTS:],
            human_feedback=tuple(data.get("human_feedback", [])),
            reflections=tuple(
                ReflectionInsight(
                    type=ReflectionType(item["type"]),
                    summary=item["summary"],
                    analysis=item.get("analysis"),
                    suggested_action=item.get("suggested_action"),
                    confidence=item.get("confidence", 1.0),
                )
                for item in data.get("reflections", [])
            ),
            metadata=dict(data.get("metadata", {})),
            max_learnings=data.get("max_learnings", DEFAULT_MAX_LEARNINGS),
        )
