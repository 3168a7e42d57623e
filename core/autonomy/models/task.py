"""
Task contracts shared between the orchestrator and task executors.

The engine treats the actual work step as an opaque, injected collaborator.
These types are the only thing the two sides agree on.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class TaskRequest:
    """A single unit of work handed to a task executor."""

    prompt: str
    request_id: str = field(default_factory=new_request_id)
    context_summary: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_prompt(self, prompt: str) -> TaskRequest:
        """Same request identity and context, different prompt."""
        return TaskRequest(
            prompt=prompt,
            request_id=self.request_id,
            context_summary=self.context_summary,
            metadata=dict(self.metadata),
        )


@dataclass
class TokenCount:
    """Token usage reported by an executor, when it can measure it."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TaskResult:
    """Outcome of one executed attempt."""

    request_id: str
    success: bool
    output: str = ""
    error: str | None = None
    token_usage: TokenCount | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        """A result counts only when it succeeded with non-blank output."""
        return self.success and bool(self.output and self.output.strip())

    @classmethod
    def failure(cls, request_id: str, error: str) -> TaskResult:
        return cls(request_id=request_id, success=False, error=error)


class TaskOutputType(StrEnum):
    """Kind of partial output chunk."""

    OUTPUT = "output"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class TaskOutput:
    """Partial progress emitted while a task runs. Not persisted."""

    request_id: str
    content: str
    type: TaskOutputType = TaskOutputType.OUTPUT
    timestamp: datetime = field(default_factory=datetime.now)


OutputCallback = Callable[[TaskOutput], Awaitable[None]]


@runtime_checkable
class TaskExecutor(Protocol):
    """
    The external "do work" step.

    Implementations may call ``on_output`` zero or more times before
    returning. They must only raise ``asyncio.CancelledError`` on genuine
    cancellation.
    """

    async def execute(
        self,
        request: TaskRequest,
        on_output: OutputCallback | None = None,
    ) -> TaskResult: ...
