"""Retry, backoff and fallback around task execution."""

from autonomy.resilience.context_aware import (
    ContextAwareFallbackStrategy,
    FallbackConfig,
    FallbackPool,
    GuessRule,
)
from autonomy.resilience.executor import ResilienceSettings, ResilientExecutor
from autonomy.resilience.fallback import (
    FallbackContext,
    FallbackStrategy,
    ListBasedFallbackStrategy,
    NoOpFallbackStrategy,
    StringListFallbackStrategy,
)

__all__ = [
    "ContextAwareFallbackStrategy",
    "FallbackConfig",
    "FallbackContext",
    "FallbackPool",
    "FallbackStrategy",
    "GuessRule",
    "ListBasedFallbackStrategy",
    "NoOpFallbackStrategy",
    "ResilienceSettings",
    "ResilientExecutor",
    "StringListFallbackStrategy",
]
