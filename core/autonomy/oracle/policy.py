"""
Completion policy - what the control loop does with a verdict.

Pure functions; the orchestrator owns the side effects (events, queue).
"""

from enum import StrEnum

from autonomy.config import AutonomousConfig
from autonomy.models.verdict import AnyVerdict


class CompletionDecision(StrEnum):
    GOAL_ACHIEVED = "goal_achieved"
    AUTO_CONTINUE = "auto_continue"
    WAIT_FOR_INPUT = "wait_for_input"
    STOP = "stop"


def infer_can_continue(verdict: AnyVerdict, config: AutonomousConfig) -> tuple[AnyVerdict, bool]:
    """Treat "not done" as continuable when configured to.

    Verifiers, smaller models especially, do not set ``can_continue``
    reliably. Returns the effective verdict and whether inference applied.
    A complete verdict is never touched.
    """
    if (
        config.infer_can_continue_from_complete
        and not verdict.is_complete
        and not verdict.can_continue
    ):
        return verdict.with_can_continue(True), True
    return verdict, False


def decide_completion(verdict: AnyVerdict, config: AutonomousConfig) -> CompletionDecision:
    """Apply the precedence rules to an (already inferred) verdict."""
    if verdict.is_complete:
        return CompletionDecision.GOAL_ACHIEVED

    if verdict.can_continue and config.auto_continue_enabled:
        return CompletionDecision.AUTO_CONTINUE

    if not verdict.can_continue and not config.auto_continue_on_incomplete:
        return CompletionDecision.WAIT_FOR_INPUT

    return CompletionDecision.STOP


def is_confident(verdict: AnyVerdict, config: AutonomousConfig) -> bool:
    return verdict.confidence >= config.min_confidence_threshold


def needs_human_review(verdict: AnyVerdict, config: AutonomousConfig) -> bool:
    return verdict.confidence < config.human_review_confidence_threshold


def render_auto_continue_prompt(
    template: str,
    iteration: int,
    previous_output: str = "",
    oracle_analysis: str = "",
) -> str:
    """Substitute ``{iteration}``, ``{previous_output}`` and ``{oracle_analysis}``.

    Plain replacement so templates may contain other braces.
    """
    return (
        template.replace("{iteration}", str(iteration))
        .replace("{previous_output}", previous_output)
        .replace("{oracle_analysis}", oracle_analysis)
    )


def next_prompt_for(
    verdict: AnyVerdict,
    config: AutonomousConfig,
    next_iteration: int,
    previous_output: str = "",
) -> tuple[str, bool]:
    """Prompt for the next auto-continued iteration and whether it came
    from the verdict's suggestion."""
    if verdict.next_prompt_suggestion and verdict.next_prompt_suggestion.strip():
        return verdict.next_prompt_suggestion, True
    prompt = render_auto_continue_prompt(
        config.auto_continue_prompt_template,
        next_iteration,
        previous_output,
        verdict.analysis,
    )
    return prompt, False
