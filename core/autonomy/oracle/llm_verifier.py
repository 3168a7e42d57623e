"""LLM-backed oracle verifier.

Asks a (usually small, cheap) model to judge an execution output and
parses the JSON verdict out of whatever the model wrapped around it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from autonomy.errors import OracleError
from autonomy.llm.provider import LLMProvider
from autonomy.models.execution_context import ExecutionContext
from autonomy.models.verdict import OracleConfig, OracleVerdict, TokenUsage
from autonomy.oracle.verifier import render_verification_prompt

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> str | None:
    """Pull a JSON document out of model output.

    Tries a fenced ```json block first, then the outermost ``{...}``, then
    the outermost ``[...]``.
    """
    if not text:
        return None

    match = _FENCED_JSON.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()

    for open_char, close_char in (("{", "}"), ("[", "]")):
        start = text.find(open_char)
        end = text.rfind(close_char)
        if start != -1 and end > start:
            return text[start : end + 1]

    return None


def parse_verdict(text: str, usage: TokenUsage | None = None) -> OracleVerdict:
    """Parse a verdict from raw model output.

    A measured ``usage`` replaces whatever token counts the model reported.

    Raises:
        OracleError: no JSON object found, or it does not fit the schema
    """
    payload = extract_json(text)
    if payload is None:
        raise OracleError(f"No JSON verdict in oracle response: {text[:200]!r}")

    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise OracleError(f"Malformed oracle JSON: {e}") from e

    if not isinstance(data, dict):
        raise OracleError(f"Oracle verdict must be a JSON object, got {type(data).__name__}")

    try:
        verdict = OracleVerdict.model_validate(data)
    except ValidationError as e:
        raise OracleError(f"Oracle verdict failed validation: {e}") from e

    if usage is not None:
        verdict = verdict.model_copy(update={"token_usage": usage})
    return verdict


class LLMOracleVerifier:
    """Oracle verifier that delegates judgment to an LLM provider."""

    def __init__(self, llm: LLMProvider | None, config: OracleConfig | None = None):
        self.llm = llm
        self.config = config or OracleConfig()

    @property
    def is_configured(self) -> bool:
        return self.llm is not None

    def build_verification_prompt(
        self,
        original_prompt: str,
        execution_output: str,
        config: OracleConfig | None = None,
        context_summary: str = "",
    ) -> str:
        return render_verification_prompt(
            original_prompt,
            execution_output,
            config or self.config,
            context_summary,
        )

    async def verify(
        self,
        original_prompt: str,
        execution_output: str,
        config: OracleConfig | None = None,
    ) -> OracleVerdict:
        return await self._judge(original_prompt, execution_output, config or self.config, "")

    async def verify_with_context(
        self,
        original_prompt: str,
        execution_output: str,
        context: ExecutionContext,
        config: OracleConfig | None = None,
    ) -> OracleVerdict:
        return await self._judge(
            original_prompt,
            execution_output,
            config or self.config,
            context.build_summary(),
        )

    async def _judge(
        self,
        original_prompt: str,
        execution_output: str,
        config: OracleConfig,
        context_summary: str,
    ) -> OracleVerdict:
        if self.llm is None:
            raise OracleError("Oracle verifier has no LLM provider configured")

        prompt = self.build_verification_prompt(
            original_prompt, execution_output, config, context_summary
        )
        response = await self.llm.acomplete(
            messages=[{"role": "user", "content": prompt}],
            system=config.active_system_prompt,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            json_mode=True,
        )
        usage = TokenUsage(
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        verdict = parse_verdict(response.content, usage)
        logger.debug(
            f"Oracle verdict: complete={verdict.is_complete} "
            f"can_continue={verdict.can_continue} confidence={verdict.confidence:.2f}"
        )
        return verdict
