"""Collaborators the engine calls to measure and shrink context."""

from collections.abc import Callable
from dataclasses import replace
from typing import Protocol, runtime_checkable

from autonomy.context.saturation import SaturationState
from autonomy.models.execution_context import ExecutionContext

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return len(text) // 4


@runtime_checkable
class ContextReducer(Protocol):
    """
    Summarizes or pages out context when the saturation monitor asks for it.

    Receives the current context and the saturation state that triggered the
    request; returns a (usually smaller) replacement context.
    """

    async def reduce(
        self,
        context: ExecutionContext,
        state: SaturationState,
    ) -> ExecutionContext: ...


class KeepRecentReducer:
    """Drops everything but the most recent items of each context list."""

    def __init__(self, keep: int = 2):
        self.keep = keep

    async def reduce(self, context: ExecutionContext, state: SaturationState) -> ExecutionContext:
        keep = self.keep
        return replace(
            context,
            learnings=context.learnings[-keep:] if keep else (),
            error_resolutions=context.error_resolutions[-keep:] if keep else (),
            previous_outputs=context.previous_outputs[-keep:] if keep else (),
            human_feedback=context.human_feedback[-keep:] if keep else (),
            reflections=context.reflections[-keep:] if keep else (),
        )
