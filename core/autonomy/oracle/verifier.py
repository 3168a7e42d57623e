"""Oracle verifier contracts."""

from typing import Protocol, runtime_checkable

from autonomy.models.execution_context import ExecutionContext
from autonomy.models.verdict import AnyVerdict, OracleConfig


@runtime_checkable
class OracleVerifier(Protocol):
    """
    Judges whether an execution output satisfies the original prompt.

    ``is_configured`` gates whether the orchestrator calls ``verify`` at
    all. ``build_verification_prompt`` is a pure helper with no I/O.
    """

    @property
    def is_configured(self) -> bool: ...

    async def verify(
        self,
        original_prompt: str,
        execution_output: str,
        config: OracleConfig | None = None,
    ) -> AnyVerdict: ...

    def build_verification_prompt(
        self,
        original_prompt: str,
        execution_output: str,
        config: OracleConfig | None = None,
        context_summary: str = "",
    ) -> str: ...


@runtime_checkable
class ContextAwareOracleVerifier(OracleVerifier, Protocol):
    """Verifier that also uses the accumulated execution context."""

    async def verify_with_context(
        self,
        original_prompt: str,
        execution_output: str,
        context: ExecutionContext,
        config: OracleConfig | None = None,
    ) -> AnyVerdict: ...


def render_verification_prompt(
    original_prompt: str,
    execution_output: str,
    config: OracleConfig,
    context_summary: str = "",
) -> str:
    """Fill the active user prompt template."""
    return (
        config.active_user_prompt_template.replace("{original_prompt}", original_prompt)
        .replace("{execution_output}", execution_output)
        .replace("{context}", context_summary or "No prior context.")
    )
