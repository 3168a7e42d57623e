"""
Event Bus - typed progress events for autonomous sessions.

The orchestrator and the resilient executor publish here; callers subscribe
to follow a run. Every halt of the control loop publishes exactly one
terminal event (see ``TERMINAL_EVENT_TYPES``), so completion never has to
be inferred from side effects.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class AutonomousEventType(StrEnum):
    """Types of events that can be published."""

    # Session lifecycle
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"

    # Terminal events
    COMPLETED = "completed"
    GOAL_ACHIEVED = "goal_achieved"
    STOPPED_WAITING = "stopped_waiting"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    EXECUTION_FAILED = "execution_failed"
    STOPPED = "stopped"
    ERROR = "error"

    # Queue
    QUEUE_EMPTY = "queue_empty"
    QUEUE_CLEARED = "queue_cleared"

    # Task execution
    TASK_STARTED = "task_started"
    TASK_OUTPUT = "task_output"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"

    # Iterations
    ITERATION_STARTED = "iteration_started"
    ITERATION_COMPLETED = "iteration_completed"
    AUTO_CONTINUING = "auto_continuing"

    # Oracle
    ORACLE_VERIFYING = "oracle_verifying"
    ORACLE_VERIFIED = "oracle_verified"
    ORACLE_RETRYING = "oracle_retrying"
    ORACLE_ERROR = "oracle_error"
    CAN_CONTINUE_INFERRED = "can_continue_inferred"

    # History / checkpoints
    HISTORY_ENTRY_ADDED = "history_entry_added"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESTORED = "checkpoint_restored"

    # Human-in-the-loop
    HUMAN_APPROVAL_REQUESTED = "human_approval_requested"
    HUMAN_APPROVAL_RECEIVED = "human_approval_received"
    HUMAN_FEEDBACK_RECEIVED = "human_feedback_received"
    HUMAN_REVIEW_RECOMMENDED = "human_review_recommended"

    # Context
    CONTEXT_REDUCED = "context_reduced"
    SATURATION_CHANGED = "saturation_changed"
    REFLECTION_CAPTURED = "reflection_captured"

    # Resilience
    RETRY_ATTEMPT = "retry_attempt"
    FALLBACK_TRIGGERED = "fallback_triggered"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FALLBACK_FAILED = "fallback_failed"

    # Custom events
    CUSTOM = "custom"


TERMINAL_EVENT_TYPES = frozenset(
    {
        AutonomousEventType.COMPLETED,
        AutonomousEventType.GOAL_ACHIEVED,
        AutonomousEventType.STOPPED_WAITING,
        AutonomousEventType.MAX_ITERATIONS_REACHED,
        AutonomousEventType.EXECUTION_FAILED,
        AutonomousEventType.STOPPED,
        AutonomousEventType.ERROR,
    }
)


@dataclass
class AutonomousEvent:
    """An event in an autonomous session."""

    type: AutonomousEventType
    session_id: str
    message: str = ""  # Human-readable progress line
    iteration: int | None = None
    request_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "message": self.message,
            "iteration": self.iteration,
            "request_id": self.request_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


# Type for event handlers
EventHandler = Callable[[AutonomousEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[AutonomousEventType] | None  # None receives every type
    handler: EventHandler
    filter_session: str | None = None  # Only receive events from this session


class EventBus:
    """
    Async pub/sub bus for session progress.

    Features:
    - Type-based subscriptions (or all types)
    - Session filtering
    - Event history for debugging
    - Handler failures are logged, never propagated to the publisher

    Example:
        bus = EventBus()

        async def on_done(event: AutonomousEvent):
            print(f"{event.session_id}: {event.message}")

        bus.subscribe([AutonomousEventType.GOAL_ACHIEVED], on_done)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[AutonomousEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: Iterable[AutonomousEventType] | None,
        handler: EventHandler,
        filter_session: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive, or None for all
            handler: Async function to call when event occurs
            filter_session: Only receive events from this session

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types) if event_types is not None else None,
            handler=handler,
            filter_session=filter_session,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types or 'all events'}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: AutonomousEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        # Snapshot so handlers may (un)subscribe while being notified
        matching = [
            sub.handler for sub in list(self._subscriptions.values()) if self._matches(sub, event)
        ]
        if matching:
            await self._execute_handlers(event, matching)

    def _matches(self, subscription: Subscription, event: AutonomousEvent) -> bool:
        if subscription.event_types is not None and event.type not in subscription.event_types:
            return False
        if subscription.filter_session and subscription.filter_session != event.session_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: AutonomousEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit(
        self,
        event_type: AutonomousEventType,
        session_id: str,
        message: str = "",
        iteration: int | None = None,
        request_id: str | None = None,
        **data: Any,
    ) -> AutonomousEvent:
        """Build, publish and return an event."""
        event = AutonomousEvent(
            type=event_type,
            session_id=session_id,
            message=message,
            iteration=iteration,
            request_id=request_id,
            data=data,
        )
        await self.publish(event)
        return event

    async def emit_retry_attempt(
        self,
        session_id: str,
        request_id: str,
        attempt: int,
        max_retries: int,
        delay_seconds: float,
        error: str | None,
    ) -> None:
        """Emit retry attempt event."""
        await self.emit(
            AutonomousEventType.RETRY_ATTEMPT,
            session_id,
            f"Attempt {attempt}/{max_retries} failed, retrying in {delay_seconds:.2f}s: {error}",
            request_id=request_id,
            attempt=attempt,
            max_retries=max_retries,
            delay_seconds=delay_seconds,
            error=error,
        )

    async def emit_oracle_verified(
        self,
        session_id: str,
        iteration: int,
        is_complete: bool,
        can_continue: bool,
        confidence: float,
        analysis: str,
    ) -> None:
        """Emit oracle verdict event."""
        await self.emit(
            AutonomousEventType.ORACLE_VERIFIED,
            session_id,
            f"Oracle: complete={is_complete}, can_continue={can_continue}, "
            f"confidence={confidence:.2f}",
            iteration=iteration,
            is_complete=is_complete,
            can_continue=can_continue,
            confidence=confidence,
            analysis=analysis,
        )

    async def emit_auto_continuing(
        self,
        session_id: str,
        iteration: int,
        next_prompt: str,
        from_suggestion: bool,
    ) -> None:
        """Emit auto-continue event."""
        await self.emit(
            AutonomousEventType.AUTO_CONTINUING,
            session_id,
            f"AutoContinuing to iteration {iteration + 1}",
            iteration=iteration,
            next_prompt=next_prompt,
            from_suggestion=from_suggestion,
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: AutonomousEventType | None = None,
        session_id: str | None = None,
        limit: int = 100,
    ) -> list[AutonomousEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if session_id:
            events = [e for e in events if e.session_id == session_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: AutonomousEventType,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> AutonomousEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: AutonomousEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: AutonomousEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe([event_type], handler, filter_session=session_id)

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
