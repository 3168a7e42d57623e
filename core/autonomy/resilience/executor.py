"""
Resilient Executor - retry with exponential backoff, then fallback.

Wraps any ``TaskExecutor``. An attempt fails when the inner executor raises
or returns an invalid result (unsuccessful, or blank output). Failed
attempts are retried after a growing delay; once retries are exhausted a
fallback strategy may substitute a result. Only when both are exhausted is
``ExecutionFailedError`` raised.

Cancellation is never retried and never replaced by a fallback.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from autonomy.errors import ExecutionFailedError
from autonomy.models.task import OutputCallback, TaskExecutor, TaskRequest, TaskResult
from autonomy.resilience.fallback import FallbackContext, FallbackStrategy
from autonomy.runtime.event_bus import AutonomousEventType, EventBus

logger = logging.getLogger(__name__)

MAX_PREVIOUS_OUTPUTS = 50


@dataclass(frozen=True)
class ResilienceSettings:
    """Retry policy."""

    max_retries: int = 3
    initial_delay_ms: int = 500
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.initial_delay_ms < 0:
            raise ValueError(f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}"
            )

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (1-indexed)."""
        delay = (self.initial_delay_ms / 1000) * self.backoff_multiplier ** (attempt - 1)
        return min(delay, self.max_delay_seconds)


class ResilientExecutor:
    """
    Decorator adding retry/backoff/fallback to a task executor.

    The executor remembers the outputs it has returned during its lifetime;
    they are passed to the fallback strategy so substitutes do not repeat
    earlier results. ``reset()`` clears that memory along with the
    strategy's own.
    """

    def __init__(
        self,
        inner: TaskExecutor,
        settings: ResilienceSettings | None = None,
        fallback_strategy: FallbackStrategy | None = None,
        event_bus: EventBus | None = None,
        session_id: str = "",
    ):
        self.inner = inner
        self.settings = settings or ResilienceSettings()
        self.fallback_strategy = fallback_strategy
        self.event_bus = event_bus
        self.session_id = session_id
        self._previous_outputs: deque[str] = deque(maxlen=MAX_PREVIOUS_OUTPUTS)
        self.last_attempts = 0
        self.last_used_fallback = False

    @property
    def previous_outputs(self) -> tuple[str, ...]:
        return tuple(self._previous_outputs)

    def reset(self) -> None:
        self._previous_outputs.clear()
        if self.fallback_strategy is not None:
            self.fallback_strategy.reset()

    async def execute(
        self,
        request: TaskRequest,
        on_output: OutputCallback | None = None,
        iteration: int = 0,
    ) -> TaskResult:
        """
        Execute with retries, then fallback.

        Raises:
            ExecutionFailedError: retries and fallback are both exhausted
            asyncio.CancelledError: propagated immediately
        """
        max_retries = self.settings.max_retries
        last_error: str | None = None
        last_exception: Exception | None = None
        self.last_used_fallback = False

        for attempt in range(1, max_retries + 1):
            self.last_attempts = attempt
            try:
                result = await self.inner.execute(request, on_output)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exception = e
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Attempt {attempt}/{max_retries} for {request.request_id} raised: {last_error}"
                )
            else:
                if result.is_valid:
                    if attempt > 1:
                        logger.info(f"Request {request.request_id} succeeded on attempt {attempt}")
                    self._previous_outputs.append(result.output)
                    return result
                last_exception = None
                last_error = result.error or "Empty or unsuccessful result"
                logger.warning(
                    f"Attempt {attempt}/{max_retries} for {request.request_id} "
                    f"returned an invalid result: {last_error}"
                )

            if attempt < max_retries:
                delay = self.settings.compute_delay(attempt)
                if self.event_bus is not None:
                    await self.event_bus.emit_retry_attempt(
                        session_id=self.session_id,
                        request_id=request.request_id,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error=last_error,
                    )
                await asyncio.sleep(delay)

        fallback = await self._try_fallback(request, iteration, last_error)
        if fallback is not None:
            self.last_used_fallback = True
            self._previous_outputs.append(fallback.output)
            return fallback

        raise ExecutionFailedError(
            f"Execution failed after {max_retries} retries",
            attempts=max_retries,
            last_error=last_error,
        ) from last_exception

    async def _try_fallback(
        self,
        request: TaskRequest,
        iteration: int,
        last_error: str | None,
    ) -> TaskResult | None:
        if self.fallback_strategy is None:
            return None

        context = FallbackContext(
            failed_request=request,
            iteration=iteration,
            retry_attempts=self.settings.max_retries,
            error_message=last_error,
            previous_outputs=self.previous_outputs,
            metadata=dict(request.metadata),
        )
        if not self.fallback_strategy.can_provide_fallback(context):
            logger.info(f"No fallback available for {request.request_id}")
            return None

        await self._emit(
            AutonomousEventType.FALLBACK_TRIGGERED,
            f"Retries exhausted, trying fallback: {last_error}",
            request,
            iteration,
        )
        result = await self.fallback_strategy.get_fallback(context)
        if result is None:
            await self._emit(
                AutonomousEventType.FALLBACK_FAILED,
                "Fallback strategy returned nothing",
                request,
                iteration,
            )
            return None

        logger.info(f"Fallback provided result for {request.request_id}")
        await self._emit(
            AutonomousEventType.FALLBACK_SUCCEEDED,
            f"Fallback result: {result.output[:100]}",
            request,
            iteration,
        )
        return result

    async def _emit(
        self,
        event_type: AutonomousEventType,
        message: str,
        request: TaskRequest,
        iteration: int,
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.emit(
            event_type,
            self.session_id,
            message,
            iteration=iteration,
            request_id=request.request_id,
        )
