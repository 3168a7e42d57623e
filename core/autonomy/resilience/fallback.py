"""
Fallback strategies - substitute results when execution keeps failing.

A strategy is consulted by the resilient executor only after every retry
has been used up. Strategies remember what they already handed out during
a session so the same substitute is never produced twice; ``reset()``
clears that memory.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from autonomy.models.task import TaskRequest, TaskResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackContext:
    """What a strategy knows about the failure it is asked to cover."""

    failed_request: TaskRequest
    iteration: int = 0
    retry_attempts: int = 0
    error_message: str | None = None
    previous_outputs: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class FallbackStrategy(Protocol):
    def can_provide_fallback(self, context: FallbackContext) -> bool: ...

    async def get_fallback(self, context: FallbackContext) -> TaskResult | None: ...

    def reset(self) -> None: ...


class NoOpFallbackStrategy:
    """Never substitutes anything."""

    def can_provide_fallback(self, context: FallbackContext) -> bool:
        return False

    async def get_fallback(self, context: FallbackContext) -> TaskResult | None:
        return None

    def reset(self) -> None:
        pass


class ListBasedFallbackStrategy(ABC):
    """
    Picks the first candidate from a fixed list whose concepts have not
    been seen yet, either in earlier outputs or in earlier picks.

    Subclasses supply the candidates and build the result; they may
    override ``extract_concepts`` to tokenize candidates more finely than
    the default (the whole lowercased value).
    """

    def __init__(self) -> None:
        self._used: list[str] = []

    @property
    @abstractmethod
    def fallback_values(self) -> Sequence[str]:
        """Candidates, in preference order."""

    @abstractmethod
    def create_result(self, request: TaskRequest, value: str) -> TaskResult:
        """Wrap a chosen candidate as a task result."""

    def extract_concepts(self, value: str) -> set[str]:
        return {value.strip().lower()}

    def can_provide_fallback(self, context: FallbackContext) -> bool:
        return self._next_value(context) is not None

    async def get_fallback(self, context: FallbackContext) -> TaskResult | None:
        value = self._next_value(context)
        if value is None:
            logger.info("Fallback list exhausted")
            return None
        self._used.append(value)
        logger.info(f"Using fallback value: {value}")
        return self.create_result(context.failed_request, value)

    def reset(self) -> None:
        self._used.clear()

    def _next_value(self, context: FallbackContext) -> str | None:
        seen: set[str] = set()
        for item in (*self._used, *context.previous_outputs):
            seen |= self.extract_concepts(item)

        for candidate in self.fallback_values:
            if not (self.extract_concepts(candidate) & seen):
                return candidate
        return None


ResultFactory = Callable[[TaskRequest, str], TaskResult]


def default_result_factory(request: TaskRequest, content: str) -> TaskResult:
    return TaskResult(
        request_id=request.request_id,
        success=True,
        output=content,
        metadata={"fallback": True},
    )


class StringListFallbackStrategy(ListBasedFallbackStrategy):
    """List-based strategy over a plain list of strings."""

    def __init__(
        self,
        fallbacks: Sequence[str],
        result_factory: ResultFactory | None = None,
    ):
        super().__init__()
        self._fallbacks = list(fallbacks)
        self._result_factory = result_factory or default_result_factory

    @property
    def fallback_values(self) -> Sequence[str]:
        return self._fallbacks

    def create_result(self, request: TaskRequest, value: str) -> TaskResult:
        return self._result_factory(request, value)
