"""
Checkpoint Schema - session snapshots for resumability.

A checkpoint is taken after each completed iteration. It captures the
pending queue, the accumulated context and the history so far, which is
enough to rebuild an orchestrator and resume where it stopped.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from autonomy.models.verdict import OracleVerdict


class ExecutionHistoryEntry(BaseModel):
    """One executed attempt and how it was judged."""

    iteration: int
    oracle_iteration: int = 0
    request_id: str
    prompt: str
    output: str = ""
    success: bool = True
    error: str | None = None
    verdict: OracleVerdict | None = None
    used_fallback: bool = False
    tokens_used: int = 0
    started_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    completed_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow"}


class ExecutionCheckpoint(BaseModel):
    """
    Snapshot of an orchestrator session after an iteration.

    ``context`` holds ``ExecutionContext.to_dict()`` output so the file
    format does not depend on the in-memory dataclasses.
    """

    checkpoint_id: str  # Format: cp_{session_id}_{iteration}_{timestamp}
    session_id: str
    iteration: int
    created_at: str
    state: str
    pending_prompts: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[ExecutionHistoryEntry] = Field(default_factory=list)
    total_tokens: int = 0
    is_clean: bool = True  # no failed attempts so far
    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        session_id: str,
        iteration: int,
        state: str,
        pending_prompts: list[str],
        context: dict[str, Any],
        history: list[ExecutionHistoryEntry],
        total_tokens: int = 0,
        is_clean: bool = True,
        description: str = "",
    ) -> "ExecutionCheckpoint":
        """Create a checkpoint with a generated ID and timestamp."""
        now = datetime.now()
        checkpoint_id = f"cp_{session_id}_{iteration}_{now.strftime('%Y%m%d_%H%M%S_%f')}"

        return cls(
            checkpoint_id=checkpoint_id,
            session_id=session_id,
            iteration=iteration,
            created_at=now.isoformat(),
            state=state,
            pending_prompts=list(pending_prompts),
            context=context,
            history=list(history),
            total_tokens=total_tokens,
            is_clean=is_clean,
            description=description or f"Iteration {iteration}",
        )


class CheckpointSummary(BaseModel):
    """Index entry; lets the store list checkpoints without loading them."""

    checkpoint_id: str
    iteration: int
    created_at: str
    state: str
    is_clean: bool = True
    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: ExecutionCheckpoint) -> "CheckpointSummary":
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            iteration=checkpoint.iteration,
            created_at=checkpoint.created_at,
            state=checkpoint.state,
            is_clean=checkpoint.is_clean,
            description=checkpoint.description,
        )


class CheckpointIndex(BaseModel):
    """Manifest of all checkpoints for a session."""

    session_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None

    model_config = {"extra": "allow"}

    def add(self, checkpoint: ExecutionCheckpoint) -> None:
        self.checkpoints.append(CheckpointSummary.from_checkpoint(checkpoint))
        self.latest_checkpoint_id = checkpoint.checkpoint_id

    def remove(self, checkpoint_id: str) -> None:
        self.checkpoints = [cp for cp in self.checkpoints if cp.checkpoint_id != checkpoint_id]
        if self.latest_checkpoint_id == checkpoint_id:
            self.latest_checkpoint_id = (
                self.checkpoints[-1].checkpoint_id if self.checkpoints else None
            )

    def get_latest_clean(self) -> CheckpointSummary | None:
        clean = [cp for cp in self.checkpoints if cp.is_clean]
        return clean[-1] if clean else None
