"""LLM provider abstraction and LLM-backed collaborators."""

from autonomy.llm.executor import LLMTaskExecutor
from autonomy.llm.provider import LLMProvider, LLMResponse

__all__ = ["LLMProvider", "LLMResponse", "LLMTaskExecutor"]
