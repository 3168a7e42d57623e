"""Runtime: event bus and human-in-the-loop contracts.

The orchestrator and builder live in ``autonomy.runtime.orchestrator`` and
``autonomy.runtime.builder`` and are re-exported from ``autonomy``.
"""

from autonomy.runtime.event_bus import (
    TERMINAL_EVENT_TYPES,
    AutonomousEvent,
    AutonomousEventType,
    EventBus,
    EventHandler,
)
from autonomy.runtime.hitl import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResponse,
    AutoApproveHumanInTheLoop,
    FeedbackRequest,
    FeedbackResponse,
    FeedbackType,
    HumanInTheLoop,
    InterventionPoint,
)

__all__ = [
    "TERMINAL_EVENT_TYPES",
    "AutonomousEvent",
    "AutonomousEventType",
    "EventBus",
    "EventHandler",
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalResponse",
    "AutoApproveHumanInTheLoop",
    "FeedbackRequest",
    "FeedbackResponse",
    "FeedbackType",
    "HumanInTheLoop",
    "InterventionPoint",
]
