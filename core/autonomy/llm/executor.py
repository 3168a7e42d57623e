"""Task executor backed by an LLM provider."""

import logging

from autonomy.llm.provider import LLMProvider
from autonomy.models.task import (
    OutputCallback,
    TaskOutput,
    TaskRequest,
    TaskResult,
    TokenCount,
)

logger = logging.getLogger(__name__)

DEFAULT_EXECUTOR_SYSTEM_PROMPT = (
    "You are an autonomous agent working toward a goal over several "
    "iterations. Use the context from earlier iterations and answer the "
    "current instruction directly."
)


class LLMTaskExecutor:
    """
    Sends each request to the model as a single user turn.

    The accumulated context summary, when present, is prepended so the
    model sees what earlier iterations learned. Provider errors propagate
    so the resilient executor can retry them.
    """

    def __init__(
        self,
        llm: LLMProvider,
        system_prompt: str = DEFAULT_EXECUTOR_SYSTEM_PROMPT,
        max_tokens: int = 2048,
        temperature: float | None = None,
    ):
        self.llm = llm
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature

    def build_user_message(self, request: TaskRequest) -> str:
        summary = request.context_summary.strip()
        if not summary or summary == "No prior context.":
            return request.prompt
        return f"Context from previous iterations:\n{summary}\n\nCurrent instruction:\n{request.prompt}"

    async def execute(
        self,
        request: TaskRequest,
        on_output: OutputCallback | None = None,
    ) -> TaskResult:
        response = await self.llm.acomplete(
            messages=[{"role": "user", "content": self.build_user_message(request)}],
            system=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        content = response.content or ""
        if on_output is not None and content:
            await on_output(TaskOutput(request_id=request.request_id, content=content))

        logger.debug(
            f"LLM executor completed {request.request_id}",
            extra={"model": response.model, "tokens_used": response.input_tokens + response.output_tokens},
        )

        return TaskResult(
            request_id=request.request_id,
            success=bool(content.strip()),
            output=content,
            error=None if content.strip() else "LLM returned empty content",
            token_usage=TokenCount(
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
            ),
        )
