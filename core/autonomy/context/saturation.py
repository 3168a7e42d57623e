"""
Saturation Monitor - tracks token usage against a context budget.

Usage is recorded per source and classified into discrete pressure levels,
each with a recommended mitigation. Listeners are notified only when the
level changes, never on every ``record_usage`` call.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum, StrEnum

logger = logging.getLogger(__name__)


class SaturationLevel(IntEnum):
    """Pressure levels, ordered so they can be compared."""

    NORMAL = 0
    ELEVATED = 1
    HIGH = 2
    CRITICAL = 3
    OVERFLOW = 4

    @property
    def label(self) -> str:
        return self.name.lower()


class SaturationAction(StrEnum):
    NONE = "none"
    CONSIDER_SUMMARIZATION = "consider_summarization"
    SHOULD_PAGE_OUT = "should_page_out"
    MUST_EVICT = "must_evict"
    EMERGENCY = "emergency"


_ACTION_FOR_LEVEL = {
    SaturationLevel.NORMAL: SaturationAction.NONE,
    SaturationLevel.ELEVATED: SaturationAction.CONSIDER_SUMMARIZATION,
    SaturationLevel.HIGH: SaturationAction.SHOULD_PAGE_OUT,
    SaturationLevel.CRITICAL: SaturationAction.MUST_EVICT,
    SaturationLevel.OVERFLOW: SaturationAction.EMERGENCY,
}


@dataclass(frozen=True)
class SaturationConfig:
    """Budget and level thresholds, as percentages of ``max_tokens``."""

    max_tokens: int = 128_000
    elevated_threshold: float = 60.0
    high_threshold: float = 75.0
    critical_threshold: float = 85.0
    overflow_threshold: float = 95.0
    target_after_eviction: float = 50.0
    auto_trigger_actions: bool = True

    def level_for(self, percentage: float) -> SaturationLevel:
        if percentage >= self.overflow_threshold:
            return SaturationLevel.OVERFLOW
        if percentage >= self.critical_threshold:
            return SaturationLevel.CRITICAL
        if percentage >= self.high_threshold:
            return SaturationLevel.HIGH
        if percentage >= self.elevated_threshold:
            return SaturationLevel.ELEVATED
        return SaturationLevel.NORMAL


@dataclass(frozen=True)
class SaturationState:
    """Point-in-time view of context usage."""

    current_tokens: int
    max_tokens: int
    percentage: float
    level: SaturationLevel
    recommended_action: SaturationAction
    usage_by_source: dict[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def available_tokens(self) -> int:
        return max(0, self.max_tokens - self.current_tokens)


@dataclass(frozen=True)
class SaturationChangedEvent:
    previous_level: SaturationLevel
    new_level: SaturationLevel
    state: SaturationState


@dataclass(frozen=True)
class ActionRequiredEvent:
    action: SaturationAction
    state: SaturationState
    suggested_tokens_to_free: int


SaturationChangedHandler = Callable[[SaturationChangedEvent], None]
ActionRequiredHandler = Callable[[ActionRequiredEvent], None]


class SaturationMonitor:
    """
    In-memory saturation tracker for one session.

    Handlers are plain callables invoked synchronously in the caller's
    thread of control. The handler lists are copied before dispatch, so a
    handler may subscribe or unsubscribe while being notified. A failing
    handler is logged and does not stop the others.

    Example:
        monitor = SaturationMonitor(SaturationConfig(max_tokens=1000))
        monitor.subscribe_changed(lambda e: print(e.previous_level, e.new_level))
        monitor.record_usage(650, source="response")  # normal -> elevated
    """

    def __init__(self, config: SaturationConfig | None = None):
        self._config = config or SaturationConfig()
        self._usage_by_source: dict[str, int] = {}
        self._total = 0
        self._level = SaturationLevel.NORMAL
        self._last_updated = datetime.now()
        self._changed_handlers: dict[str, SaturationChangedHandler] = {}
        self._action_handlers: dict[str, ActionRequiredHandler] = {}
        self._subscription_counter = 0

    @property
    def config(self) -> SaturationConfig:
        return self._config

    @property
    def current_state(self) -> SaturationState:
        return self._build_state()

    def configure(self, config: SaturationConfig) -> None:
        """Replace budget and thresholds; re-evaluates the current level."""
        self._config = config
        self._evaluate()

    def record_usage(self, amount: int, source: str = "unknown") -> SaturationState:
        """Add ``amount`` tokens attributed to ``source``."""
        if amount < 0:
            raise ValueError(f"Token amount must be non-negative, got {amount}")
        self._usage_by_source[source] = self._usage_by_source.get(source, 0) + amount
        self._total += amount
        self._last_updated = datetime.now()
        return self._evaluate()

    def reset_iteration(self) -> None:
        """Zero all counters. The level drops to NORMAL without notification."""
        self._usage_by_source.clear()
        self._total = 0
        self._level = SaturationLevel.NORMAL
        self._last_updated = datetime.now()

    def tokens_to_free(self) -> int:
        target = self._config.max_tokens * self._config.target_after_eviction / 100
        return max(0, int(self._total - target))

    # === SUBSCRIPTIONS ===

    def subscribe_changed(self, handler: SaturationChangedHandler) -> str:
        sub_id = self._next_id()
        self._changed_handlers[sub_id] = handler
        return sub_id

    def subscribe_action_required(self, handler: ActionRequiredHandler) -> str:
        sub_id = self._next_id()
        self._action_handlers[sub_id] = handler
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._changed_handlers.pop(subscription_id, None)
        if removed is None:
            removed = self._action_handlers.pop(subscription_id, None)
        return removed is not None

    # === INTERNALS ===

    def _next_id(self) -> str:
        self._subscription_counter += 1
        return f"sat_{self._subscription_counter}"

    def _percentage(self) -> float:
        if self._config.max_tokens <= 0:
            return 0.0
        return 100.0 * self._total / self._config.max_tokens

    def _build_state(self) -> SaturationState:
        percentage = self._percentage()
        level = self._config.level_for(percentage)
        return SaturationState(
            current_tokens=self._total,
            max_tokens=self._config.max_tokens,
            percentage=percentage,
            level=level,
            recommended_action=_ACTION_FOR_LEVEL[level],
            usage_by_source=dict(self._usage_by_source),
            last_updated=self._last_updated,
        )

    def _evaluate(self) -> SaturationState:
        state = self._build_state()
        if state.level == self._level:
            return state

        previous = self._level
        self._level = state.level
        logger.info(
            f"Context saturation {previous.label} -> {state.level.label} "
            f"({state.percentage:.1f}% of {state.max_tokens} tokens)"
        )

        changed = SaturationChangedEvent(previous_level=previous, new_level=state.level, state=state)
        for handler in list(self._changed_handlers.values()):
            try:
                handler(changed)
            except Exception as e:
                logger.error(f"Saturation changed handler failed: {e}")

        if self._config.auto_trigger_actions and state.recommended_action != SaturationAction.NONE:
            action = ActionRequiredEvent(
                action=state.recommended_action,
                state=state,
                suggested_tokens_to_free=self.tokens_to_free(),
            )
            for handler in list(self._action_handlers.values()):
                try:
                    handler(action)
                except Exception as e:
                    logger.error(f"Saturation action handler failed: {e}")

        return state
