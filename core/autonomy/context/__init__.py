"""Context measurement and saturation tracking."""

from autonomy.context.provider import (
    ContextReducer,
    KeepRecentReducer,
    TokenCounter,
    estimate_tokens,
)
from autonomy.context.saturation import (
    ActionRequiredEvent,
    SaturationAction,
    SaturationChangedEvent,
    SaturationConfig,
    SaturationLevel,
    SaturationMonitor,
    SaturationState,
)

__all__ = [
    "ActionRequiredEvent",
    "ContextReducer",
    "KeepRecentReducer",
    "SaturationAction",
    "SaturationChangedEvent",
    "SaturationConfig",
    "SaturationLevel",
    "SaturationMonitor",
    "SaturationState",
    "TokenCounter",
    "estimate_tokens",
]
