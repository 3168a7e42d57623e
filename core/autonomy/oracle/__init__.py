"""Oracle verification contracts, completion policy and the LLM verifier."""

from autonomy.oracle.llm_verifier import LLMOracleVerifier, extract_json, parse_verdict
from autonomy.oracle.policy import (
    CompletionDecision,
    decide_completion,
    infer_can_continue,
    is_confident,
    needs_human_review,
    next_prompt_for,
    render_auto_continue_prompt,
)
from autonomy.oracle.verifier import (
    ContextAwareOracleVerifier,
    OracleVerifier,
    render_verification_prompt,
)

__all__ = [
    "CompletionDecision",
    "ContextAwareOracleVerifier",
    "LLMOracleVerifier",
    "OracleVerifier",
    "decide_completion",
    "extract_json",
    "infer_can_continue",
    "is_confident",
    "needs_human_review",
    "next_prompt_for",
    "parse_verdict",
    "render_auto_continue_prompt",
    "render_verification_prompt",
]
