"""
Human-in-the-loop protocol.

Defines the approval and feedback exchanges the orchestrator has with a
human reviewer at configured intervention points. The orchestrator only
asks when ``enable_human_in_the_loop`` is set, the point is listed in
``required_approval_points`` and the handler reports itself available.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class InterventionPoint(StrEnum):
    """Where in the loop a human may be consulted."""

    BEFORE_TASK_START = "before_task_start"
    AFTER_TASK_COMPLETE = "after_task_complete"
    ORACLE_UNCERTAIN = "oracle_uncertain"
    TASK_FAILED = "task_failed"


class ApprovalDecision(StrEnum):
    APPROVED = "approved"  # proceed
    REJECTED = "rejected"  # stop execution
    MODIFY_AND_APPROVE = "modify_and_approve"  # proceed with modified prompt
    TIMEOUT = "timeout"


class FeedbackType(StrEnum):
    QUALITY_ASSESSMENT = "quality_assessment"
    CORRECTNESS_CHECK = "correctness_check"
    NEXT_STEPS_GUIDANCE = "next_steps_guidance"
    ERROR_DIAGNOSIS = "error_diagnosis"
    GENERAL = "general"


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class ApprovalRequest:
    """Question put to the human at an intervention point."""

    point: InterventionPoint
    summary: str
    session_id: str = ""
    task_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=_short_id)
    requested_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "point": self.point.value,
            "summary": self.summary,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "details": self.details,
            "request_id": self.request_id,
            "requested_at": self.requested_at.isoformat(),
        }


@dataclass
class ApprovalResponse:
    """The human's answer to an approval request."""

    request_id: str
    decision: ApprovalDecision
    feedback: str | None = None
    modified_prompt: str | None = None  # For MODIFY_AND_APPROVE

    @property
    def proceeds(self) -> bool:
        return self.decision != ApprovalDecision.REJECTED

    @classmethod
    def auto_approve(cls, request_id: str) -> "ApprovalResponse":
        return cls(request_id=request_id, decision=ApprovalDecision.APPROVED)

    @classmethod
    def timeout(cls, request_id: str) -> "ApprovalResponse":
        return cls(request_id=request_id, decision=ApprovalDecision.TIMEOUT)


@dataclass
class FeedbackRequest:
    """Request for a free-form assessment of an output."""

    original_prompt: str
    execution_output: str
    feedback_type: FeedbackType = FeedbackType.QUALITY_ASSESSMENT
    task_id: str | None = None
    oracle_analysis: str | None = None
    request_id: str = field(default_factory=_short_id)


@dataclass
class FeedbackResponse:
    request_id: str
    is_satisfactory: bool = True
    comments: str | None = None
    rating: int | None = None


@runtime_checkable
class HumanInTheLoop(Protocol):
    """Reviewer interface implemented by a UI, chat bridge or test double."""

    @property
    def is_available(self) -> bool: ...

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse: ...

    async def request_feedback(self, request: FeedbackRequest) -> FeedbackResponse: ...


class AutoApproveHumanInTheLoop:
    """Approves everything; useful for unattended runs and tests."""

    def __init__(self) -> None:
        self.approval_requests: list[ApprovalRequest] = []

    @property
    def is_available(self) -> bool:
        return True

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        self.approval_requests.append(request)
        return ApprovalResponse.auto_approve(request.request_id)

    async def request_feedback(self, request: FeedbackRequest) -> FeedbackResponse:
        return FeedbackResponse(request_id=request.request_id)
