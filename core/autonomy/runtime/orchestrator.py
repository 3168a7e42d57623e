"""
Autonomous Orchestrator - the iteration control loop.

Pulls pending prompts, drives each through the resilient executor, asks
the oracle whether the goal is met, folds what was learned into the
execution context and decides whether to continue, stop or wait for a
human. One orchestrator runs one session on a single cooperative loop;
independent orchestrators share no mutable state.

Every halt sets a terminal ``AutonomousState`` and publishes exactly one
terminal event (see ``event_bus.TERMINAL_EVENT_TYPES``).
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from autonomy.config import AutonomousConfig, CompletionMode
from autonomy.context.provider import ContextReducer, TokenCounter, estimate_tokens
from autonomy.context.saturation import (
    ActionRequiredEvent,
    SaturationChangedEvent,
    SaturationMonitor,
    SaturationState,
)
from autonomy.errors import CheckpointError, ExecutionFailedError
from autonomy.models.checkpoint import ExecutionCheckpoint, ExecutionHistoryEntry
from autonomy.models.execution_context import (
    ErrorCategory,
    ErrorResolution,
    ExecutionContext,
)
from autonomy.models.task import TaskExecutor, TaskOutput, TaskRequest, TaskResult
from autonomy.models.verdict import AnyVerdict, OracleVerdict
from autonomy.observability.logging import set_trace_context
from autonomy.oracle.policy import (
    CompletionDecision,
    decide_completion,
    infer_can_continue,
    is_confident,
    needs_human_review,
    next_prompt_for,
)
from autonomy.oracle.verifier import ContextAwareOracleVerifier, OracleVerifier
from autonomy.resilience.executor import ResilienceSettings, ResilientExecutor
from autonomy.resilience.fallback import FallbackStrategy
from autonomy.runtime.event_bus import (
    AutonomousEvent,
    AutonomousEventType,
    EventBus,
    EventHandler,
)
from autonomy.runtime.hitl import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResponse,
    FeedbackRequest,
    HumanInTheLoop,
    InterventionPoint,
)
from autonomy.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

OUTPUT_CONTEXT_LIMIT = 1000

RequestFactory = Callable[[str, str], TaskRequest]  # (request_id, prompt) -> request


def default_request_factory(request_id: str, prompt: str) -> TaskRequest:
    return TaskRequest(prompt=prompt, request_id=request_id)


class AutonomousState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED_BY_MAX_ITERATIONS = "stopped_by_max_iterations"
    STOPPED_BY_USER = "stopped_by_user"
    STOPPED_BY_ERROR = "stopped_by_error"
    STOPPED_BY_GOAL_ACHIEVED = "stopped_by_goal_achieved"
    STOPPED_WAITING = "stopped_waiting"

    @property
    def is_terminal(self) -> bool:
        return self not in (AutonomousState.IDLE, AutonomousState.RUNNING, AutonomousState.PAUSED)


@dataclass(frozen=True)
class AutonomousStatus:
    """Snapshot of a session."""

    session_id: str
    state: AutonomousState
    current_iteration: int
    max_iterations: int
    pending_tasks: int
    total_tokens: int
    goal_achieved: bool = False
    stop_reason: str | None = None
    last_error: str | None = None
    last_verdict: OracleVerdict | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class _Flow(StrEnum):
    """What the loop does after an iteration."""

    NEXT = "next"
    HALT = "halt"


def _truncate(text: str, limit: int = OUTPUT_CONTEXT_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class AutonomousOrchestrator:
    """
    Runs an autonomous session to completion.

    Usually built through ``OrchestratorBuilder``. Runtime entry points are
    ``enqueue_prompt``, ``start`` and ``subscribe``; ``pause``, ``resume``
    and ``stop`` control a running loop from another task.

    Example:
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(my_executor)
            .with_oracle(my_verifier)
            .with_auto_continue()
            .build()
        )
        orchestrator.enqueue_prompt("Summarize the repository")
        status = await orchestrator.start()
    """

    def __init__(
        self,
        executor: TaskExecutor,
        config: AutonomousConfig | None = None,
        oracle: OracleVerifier | None = None,
        fallback_strategy: FallbackStrategy | None = None,
        resilience: ResilienceSettings | None = None,
        human_in_the_loop: HumanInTheLoop | None = None,
        saturation_monitor: SaturationMonitor | None = None,
        context_reducer: ContextReducer | None = None,
        token_counter: TokenCounter | None = None,
        checkpoint_store: CheckpointStore | None = None,
        request_factory: RequestFactory | None = None,
        event_bus: EventBus | None = None,
        session_id: str | None = None,
    ):
        self.config = config or AutonomousConfig()
        self.session_id = session_id or uuid.uuid4().hex
        self.event_bus = event_bus or EventBus()
        self.oracle = oracle
        self.human_in_the_loop = human_in_the_loop
        self.context_reducer = context_reducer
        self.token_counter = token_counter or estimate_tokens
        self.checkpoint_store = checkpoint_store
        self._request_factory = request_factory or default_request_factory

        if isinstance(executor, ResilientExecutor):
            self._executor = executor
            self._executor.event_bus = self._executor.event_bus or self.event_bus
            self._executor.session_id = self._executor.session_id or self.session_id
        else:
            self._executor = ResilientExecutor(
                inner=executor,
                settings=resilience
                or ResilienceSettings(
                    max_retries=self.config.retry_on_failure_count + 1,
                    initial_delay_ms=self.config.retry_delay_ms,
                ),
                fallback_strategy=(
                    fallback_strategy if self.config.enable_fallback_strategy else None
                ),
                event_bus=self.event_bus,
                session_id=self.session_id,
            )

        self.saturation_monitor = saturation_monitor or SaturationMonitor()
        self._pending_action: ActionRequiredEvent | None = None
        self._pending_level_changes: list[SaturationChangedEvent] = []
        self.saturation_monitor.subscribe_action_required(self._on_action_required)
        self.saturation_monitor.subscribe_changed(self._pending_level_changes.append)

        self._queue: deque[TaskRequest] = deque()
        self._state = AutonomousState.IDLE
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._stop_requested = False
        self._task: asyncio.Task | None = None
        self._reset_session()

    def _reset_session(self) -> None:
        self._context = ExecutionContext.initial(
            self.session_id,
            max_learnings=self.config.max_context_learnings,
        )
        self._current_iteration = 0
        self._history: list[ExecutionHistoryEntry] = []
        self._checkpoints: list[ExecutionCheckpoint] = []
        self._total_tokens = 0
        self._goal_achieved = False
        self._stop_reason: str | None = None
        self._last_error: str | None = None
        self._last_verdict: OracleVerdict | None = None
        self._had_failures = False
        self._started_at: datetime | None = None
        self._completed_at: datetime | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> AutonomousState:
        return self._state

    @property
    def execution_context(self) -> ExecutionContext:
        return self._context

    @property
    def saturation_state(self) -> SaturationState:
        return self.saturation_monitor.current_state

    @property
    def resilient_executor(self) -> ResilientExecutor:
        return self._executor

    @property
    def pending_prompts(self) -> list[str]:
        return [request.prompt for request in self._queue]

    @property
    def status(self) -> AutonomousStatus:
        return AutonomousStatus(
            session_id=self.session_id,
            state=self._state,
            current_iteration=self._current_iteration,
            max_iterations=self.config.max_iterations,
            pending_tasks=len(self._queue),
            total_tokens=self._total_tokens,
            goal_achieved=self._goal_achieved,
            stop_reason=self._stop_reason,
            last_error=self._last_error,
            last_verdict=self._last_verdict,
            started_at=self._started_at,
            completed_at=self._completed_at,
        )

    def get_history(self) -> list[ExecutionHistoryEntry]:
        return list(self._history)

    def get_checkpoints(self) -> list[ExecutionCheckpoint]:
        return list(self._checkpoints)

    # ------------------------------------------------------------------
    # Queue and events
    # ------------------------------------------------------------------

    def enqueue_prompt(self, prompt: str) -> TaskRequest:
        """Queue a prompt; it also becomes the session's goal."""
        request = self._request_factory(uuid.uuid4().hex[:8], prompt)
        if self.config.enable_context_tracking:
            self._context = self._context.with_goal(prompt)
        self._queue.append(request)
        return request

    def enqueue_task(self, request: TaskRequest) -> None:
        self._queue.append(request)

    async def clear_queue(self) -> None:
        self._queue.clear()
        await self._emit(AutonomousEventType.QUEUE_CLEARED, "Task queue cleared")

    def subscribe(
        self,
        handler: EventHandler,
        event_types: list[AutonomousEventType] | None = None,
    ) -> str:
        """Follow this session's events (all types when none given)."""
        return self.event_bus.subscribe(event_types, handler, filter_session=self.session_id)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.event_bus.unsubscribe(subscription_id)

    async def provide_feedback(self, feedback: str) -> None:
        """Add human feedback to the context for the next iteration."""
        self._context = self._context.with_human_feedback(feedback)
        await self._emit(
            AutonomousEventType.HUMAN_FEEDBACK_RECEIVED,
            f"Feedback received: {feedback[:100]}",
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        if self._state == AutonomousState.RUNNING:
            self._state = AutonomousState.PAUSED
            self._resume_event.clear()
            await self._emit(AutonomousEventType.PAUSED, "Execution paused")

    async def resume(self) -> None:
        if self._state == AutonomousState.PAUSED:
            self._state = AutonomousState.RUNNING
            self._resume_event.set()
            await self._emit(AutonomousEventType.RESUMED, "Execution resumed")

    def stop(self, cancel: bool = False) -> None:
        """
        Stop the running loop.

        By default the loop halts at the next iteration boundary with state
        STOPPED_BY_USER. With ``cancel=True`` the running task is cancelled
        immediately and ``start()`` raises ``asyncio.CancelledError``.
        """
        self._stop_requested = True
        self._resume_event.set()
        if cancel and self._task is not None and not self._task.done():
            self._task.cancel()

    async def start(self, resume: bool = False) -> AutonomousStatus:
        """
        Run the loop until it halts.

        Args:
            resume: keep the accumulated context, counters and history of
                a previous run (or a restored checkpoint) instead of
                starting fresh.

        Returns:
            Final status. Execution failures are reported through the
            status, not raised.

        Raises:
            asyncio.CancelledError: the run was cancelled
            Exception: any unexpected error, after an ERROR event
        """
        if self._state in (AutonomousState.RUNNING, AutonomousState.PAUSED):
            raise RuntimeError(f"Session {self.session_id} is already running")

        if not resume and self._state != AutonomousState.IDLE:
            goal = self._context.original_goal
            self._reset_session()
            self._executor.reset()
            self.saturation_monitor.reset_iteration()
            if goal:
                self._context = self._context.with_goal(goal)

        self._task = asyncio.current_task()
        self._stop_requested = False
        self._resume_event.set()
        self._state = AutonomousState.RUNNING
        self._started_at = datetime.now()
        self._completed_at = None
        set_trace_context(session_id=self.session_id)

        logger.info(f"Starting autonomous session with {len(self._queue)} queued task(s)")
        await self._emit(
            AutonomousEventType.STARTED,
            f"Autonomous execution started ({len(self._queue)} queued)",
            resume=resume,
        )

        try:
            await self._run_loop()
        except asyncio.CancelledError:
            self._stop_reason = "Cancelled"
            await self._halt(
                AutonomousState.STOPPED_BY_USER,
                AutonomousEventType.STOPPED,
                "Execution cancelled",
            )
            raise
        except Exception as e:
            self._last_error = str(e)
            logger.exception(f"Autonomous session failed: {e}")
            await self._halt(
                AutonomousState.STOPPED_BY_ERROR,
                AutonomousEventType.ERROR,
                f"Fatal error: {e}",
                error_type=type(e).__name__,
            )
            raise
        finally:
            self._task = None

        return self.status

    async def restore_checkpoint(self, checkpoint: ExecutionCheckpoint) -> None:
        """Load a checkpoint into an idle or halted orchestrator.

        Call ``start(resume=True)`` afterwards to continue from it.
        """
        if self._state in (AutonomousState.RUNNING, AutonomousState.PAUSED):
            raise CheckpointError("Cannot restore a checkpoint while running")
        if checkpoint.session_id != self.session_id:
            raise CheckpointError(
                f"Checkpoint belongs to session {checkpoint.session_id}, not {self.session_id}"
            )

        self._context = ExecutionContext.from_dict(checkpoint.context)
        self._current_iteration = checkpoint.iteration
        self._history = list(checkpoint.history)
        self._total_tokens = checkpoint.total_tokens
        self._queue = deque(
            self._request_factory(uuid.uuid4().hex[:8], prompt)
            for prompt in checkpoint.pending_prompts
        )
        self._state = AutonomousState.IDLE
        await self._emit(
            AutonomousEventType.CHECKPOINT_RESTORED,
            f"Restored checkpoint {checkpoint.checkpoint_id}",
            checkpoint_id=checkpoint.checkpoint_id,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        while True:
            await self._resume_event.wait()

            if self._stop_requested:
                self._stop_reason = "Stopped by user"
                await self._halt(
                    AutonomousState.STOPPED_BY_USER,
                    AutonomousEventType.STOPPED,
                    "Execution stopped by user",
                )
                return

            if not self._queue:
                await self._on_queue_empty()
                return

            if self._current_iteration >= self.config.max_iterations:
                self._stop_reason = f"Max iterations ({self.config.max_iterations}) reached"
                await self._halt(
                    AutonomousState.STOPPED_BY_MAX_ITERATIONS,
                    AutonomousEventType.MAX_ITERATIONS_REACHED,
                    self._stop_reason,
                    max_iterations=self.config.max_iterations,
                )
                return

            request = self._queue.popleft()

            approval = await self._request_approval(
                InterventionPoint.BEFORE_TASK_START,
                f"Start task: {request.prompt[:100]}",
                request.request_id,
            )
            if approval is not None:
                if approval.decision == ApprovalDecision.REJECTED:
                    self._stop_reason = "Task start rejected by human"
                    await self._halt(
                        AutonomousState.STOPPED_BY_USER,
                        AutonomousEventType.STOPPED,
                        self._stop_reason,
                    )
                    return
                if approval.modified_prompt:
                    request = request.with_prompt(approval.modified_prompt)

            flow = await self._run_iteration(request)

            if self.config.enable_checkpointing:
                await self._create_checkpoint()

            if flow == _Flow.HALT or self._state.is_terminal:
                return

    async def _on_queue_empty(self) -> None:
        if self.config.completion_mode == CompletionMode.UNTIL_GOAL_ACHIEVED:
            self._stop_reason = "No work: queue empty before the goal was achieved"
            await self._halt(
                AutonomousState.STOPPED_WAITING,
                AutonomousEventType.STOPPED_WAITING,
                self._stop_reason,
                reason="no_work",
            )
            return

        await self._emit(AutonomousEventType.QUEUE_EMPTY, "Task queue empty")
        self._stop_reason = "Queue empty"
        await self._halt(
            AutonomousState.COMPLETED,
            AutonomousEventType.COMPLETED,
            "Queue empty, execution completed",
        )

    async def _run_iteration(self, request: TaskRequest) -> _Flow:
        self._current_iteration += 1
        iteration = self._current_iteration
        set_trace_context(iteration=iteration, request_id=request.request_id)

        if self.config.enable_context_tracking:
            self._context = self._context.with_next_iteration(iteration, 0)
            if not self._context.original_goal:
                self._context = self._context.with_goal(request.prompt)

        await self._emit(
            AutonomousEventType.ITERATION_STARTED,
            f"Starting iteration {iteration}",
            request_id=request.request_id,
        )

        original_prompt = request.prompt
        prompt = request.prompt
        verdict: AnyVerdict | None = None
        output = ""
        max_oracle_iterations = self.config.max_oracle_iterations

        for oracle_iteration in range(1, max_oracle_iterations + 1):
            current = self._build_request(request, prompt, oracle_iteration)
            if self.config.enable_context_tracking:
                self._context = self._context.with_next_iteration(iteration, oracle_iteration)

            await self._emit(
                AutonomousEventType.TASK_STARTED,
                f"Task started: {current.request_id}",
                request_id=current.request_id,
                oracle_iteration=oracle_iteration,
            )
            started_at = datetime.now().isoformat()

            try:
                result = await self._executor.execute(
                    current, self._on_task_output, iteration=iteration
                )
            except ExecutionFailedError as e:
                return await self._on_execution_failed(current, e, oracle_iteration, started_at)

            output = result.output
            tokens = await self._record_usage(result)

            if self.config.enable_context_tracking:
                self._context = self._context.with_previous_output(_truncate(output))

            await self._emit(
                AutonomousEventType.TASK_COMPLETED,
                f"Task completed: {current.request_id}",
                request_id=current.request_id,
                used_fallback=self._executor.last_used_fallback,
            )

            verdict = None
            if self.config.enable_oracle and self.oracle is not None and self.oracle.is_configured:
                verdict = await self._verify(original_prompt, output, iteration)

            self._add_history(
                current,
                result,
                iteration,
                oracle_iteration,
                verdict,
                tokens,
                started_at,
            )

            await self._emit_history_added(current)

            if verdict is None:
                break

            if needs_human_review(verdict, self.config):
                approval = await self._request_approval(
                    InterventionPoint.ORACLE_UNCERTAIN,
                    f"Oracle uncertain (confidence: {verdict.confidence:.0%}). "
                    f"Analysis: {verdict.analysis}",
                    current.request_id,
                )
                if approval is None:
                    await self._emit(
                        AutonomousEventType.HUMAN_REVIEW_RECOMMENDED,
                        f"Low oracle confidence ({verdict.confidence:.0%}), human review recommended",
                        confidence=verdict.confidence,
                    )
                else:
                    if approval.decision == ApprovalDecision.REJECTED:
                        self._stop_reason = "Result rejected by human reviewer"
                        await self._halt(
                            AutonomousState.STOPPED_BY_USER,
                            AutonomousEventType.STOPPED,
                            self._stop_reason,
                        )
                        return _Flow.HALT
                    if approval.modified_prompt:
                        if oracle_iteration < max_oracle_iterations:
                            prompt = approval.modified_prompt
                            await self._emit(
                                AutonomousEventType.ORACLE_RETRYING,
                                f"Retrying with reviewer prompt: {prompt[:100]}",
                            )
                            continue
                        self._queue.appendleft(request.with_prompt(approval.modified_prompt))
                        break

            if not self._should_refine(verdict) or oracle_iteration >= max_oracle_iterations:
                break

            prompt = verdict.next_prompt_suggestion or prompt
            await self._emit(
                AutonomousEventType.ORACLE_RETRYING,
                f"Retrying with refined prompt: {prompt[:100]}",
                oracle_iteration=oracle_iteration,
            )

        await self._emit(
            AutonomousEventType.ITERATION_COMPLETED,
            f"Iteration {iteration} completed",
            request_id=request.request_id,
        )

        if self.config.enable_human_in_the_loop and self.config.request_feedback_on_complete:
            await self._request_feedback(original_prompt, output, request.request_id, verdict)

        approval = await self._request_approval(
            InterventionPoint.AFTER_TASK_COMPLETE,
            f"Accept result of: {original_prompt[:100]}",
            request.request_id,
        )
        if approval is not None and approval.decision == ApprovalDecision.REJECTED:
            self._stop_reason = "Result rejected by human reviewer"
            await self._halt(
                AutonomousState.STOPPED_BY_USER,
                AutonomousEventType.STOPPED,
                self._stop_reason,
            )
            return _Flow.HALT

        return await self._apply_completion_policy(verdict, iteration, output)

    def _build_request(self, request: TaskRequest, prompt: str, oracle_iteration: int) -> TaskRequest:
        summary = self._context.build_summary() if self.config.enable_context_tracking else ""
        request_id = (
            request.request_id
            if oracle_iteration == 1
            else f"{request.request_id}_{oracle_iteration}"
        )
        return replace(
            request,
            prompt=prompt,
            request_id=request_id,
            context_summary=summary,
            metadata=dict(request.metadata),
        )

    def _should_refine(self, verdict: AnyVerdict) -> bool:
        """Re-execute within the iteration using the oracle's suggestion.

        With auto-continue enabled the suggestion drives the next iteration
        instead.
        """
        return (
            not verdict.is_complete
            and verdict.can_continue
            and bool(verdict.next_prompt_suggestion and verdict.next_prompt_suggestion.strip())
            and not self.config.auto_continue_enabled
        )

    async def _apply_completion_policy(
        self,
        verdict: AnyVerdict | None,
        iteration: int,
        output: str,
    ) -> _Flow:
        mode = self.config.completion_mode

        if verdict is None:
            # Without an oracle a chain ends after one execution
            if mode == CompletionMode.SINGLE_GOAL:
                return await self._complete("Single goal executed")
            return _Flow.NEXT

        decision = decide_completion(verdict, self.config)
        logger.info(f"Completion decision for iteration {iteration}: {decision.value}")

        if decision == CompletionDecision.GOAL_ACHIEVED:
            confident = is_confident(verdict, self.config)
            if confident:
                self._goal_achieved = True
            if mode == CompletionMode.UNTIL_QUEUE_EMPTY and self._queue:
                return _Flow.NEXT
            if not confident:
                self._stop_reason = (
                    f"Goal reported complete with confidence {verdict.confidence:.2f} "
                    f"below {self.config.min_confidence_threshold:.2f}; awaiting review"
                )
                await self._halt(
                    AutonomousState.STOPPED_WAITING,
                    AutonomousEventType.STOPPED_WAITING,
                    self._stop_reason,
                    reason="low_confidence",
                    confidence=verdict.confidence,
                )
                return _Flow.HALT
            self._stop_reason = "Goal achieved"
            await self._halt(
                AutonomousState.STOPPED_BY_GOAL_ACHIEVED,
                AutonomousEventType.GOAL_ACHIEVED,
                f"Goal achieved: {verdict.analysis}",
                confidence=verdict.confidence,
            )
            return _Flow.HALT

        if decision == CompletionDecision.AUTO_CONTINUE:
            next_prompt, from_suggestion = next_prompt_for(
                verdict, self.config, iteration + 1, output
            )
            self._queue.append(self._request_factory(uuid.uuid4().hex[:8], next_prompt))
            await self.event_bus.emit_auto_continuing(
                session_id=self.session_id,
                iteration=iteration,
                next_prompt=next_prompt,
                from_suggestion=from_suggestion,
            )
            return _Flow.NEXT

        if decision == CompletionDecision.WAIT_FOR_INPUT:
            self._stop_reason = "Oracle cannot continue; waiting for input"
            await self._halt(
                AutonomousState.STOPPED_WAITING,
                AutonomousEventType.STOPPED_WAITING,
                self._stop_reason,
                reason="cannot_continue",
                analysis=verdict.analysis,
            )
            return _Flow.HALT

        if mode == CompletionMode.SINGLE_GOAL:
            return await self._complete("Single goal stopped without auto-continue")
        return _Flow.NEXT

    async def _complete(self, reason: str) -> _Flow:
        self._stop_reason = reason
        await self._halt(AutonomousState.COMPLETED, AutonomousEventType.COMPLETED, reason)
        return _Flow.HALT

    async def _on_execution_failed(
        self,
        request: TaskRequest,
        error: ExecutionFailedError,
        oracle_iteration: int,
        started_at: str,
    ) -> _Flow:
        iteration = self._current_iteration
        self._last_error = error.last_error or str(error)
        self._had_failures = True
        self._history.append(
            ExecutionHistoryEntry(
                iteration=iteration,
                oracle_iteration=oracle_iteration,
                request_id=request.request_id,
                prompt=request.prompt,
                success=False,
                error=self._last_error,
                started_at=started_at,
            )
        )

        if not self.config.continue_on_failure:
            self._stop_reason = f"Execution failed: {self._last_error}"
            await self._halt(
                AutonomousState.STOPPED_BY_ERROR,
                AutonomousEventType.EXECUTION_FAILED,
                self._stop_reason,
                request_id=request.request_id,
                attempts=error.attempts,
            )
            return _Flow.HALT

        await self._emit(
            AutonomousEventType.TASK_FAILED,
            f"Task failed (continuing): {self._last_error}",
            request_id=request.request_id,
            attempts=error.attempts,
        )
        if self.config.enable_context_tracking:
            self._context = self._context.with_error_resolution(
                ErrorResolution(
                    iteration=iteration,
                    error_summary=self._last_error,
                    category=ErrorCategory.RUNTIME,
                    resolution_applied="Skipped task (continue on failure)",
                    was_successful=False,
                )
            )

        approval = await self._request_approval(
            InterventionPoint.TASK_FAILED,
            f"Task failed: {self._last_error}. Continue?",
            request.request_id,
        )
        if approval is not None and approval.decision == ApprovalDecision.REJECTED:
            self._stop_reason = "Stopped by human after task failure"
            await self._halt(
                AutonomousState.STOPPED_BY_USER,
                AutonomousEventType.STOPPED,
                self._stop_reason,
            )
            return _Flow.HALT

        if self.config.completion_mode == CompletionMode.SINGLE_GOAL:
            return await self._complete("Single goal failed")
        return _Flow.NEXT

    # ------------------------------------------------------------------
    # Oracle
    # ------------------------------------------------------------------

    async def _verify(self, original_prompt: str, output: str, iteration: int) -> AnyVerdict:
        """Ask the oracle. Failures and timeouts degrade to an error verdict
        (incomplete, continuable, zero confidence); they are not retried."""
        oracle_config = self.config.oracle_config
        await self._emit(AutonomousEventType.ORACLE_VERIFYING, "Oracle verifying...")

        if isinstance(self.oracle, ContextAwareOracleVerifier) and self.config.enable_context_tracking:
            call = self.oracle.verify_with_context(
                original_prompt, output, self._context, oracle_config
            )
        else:
            call = self.oracle.verify(original_prompt, output, oracle_config)

        timeout = oracle_config.timeout_seconds if oracle_config.timeout_seconds > 0 else None
        try:
            verdict = await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError:
            message = f"Verification timed out after {timeout}s"
            logger.warning(message)
            await self._emit(AutonomousEventType.ORACLE_ERROR, f"Oracle error: {message}")
            verdict = OracleVerdict.error(message)
        except Exception as e:
            logger.error(f"Oracle verification failed: {e}")
            await self._emit(AutonomousEventType.ORACLE_ERROR, f"Oracle error: {e}")
            verdict = OracleVerdict.error(str(e))

        usage = verdict.token_usage
        if usage is not None:
            if usage.input_tokens < 0 or usage.output_tokens < 0:
                logger.warning(
                    "Ignoring negative oracle token usage "
                    f"({usage.input_tokens} in, {usage.output_tokens} out)"
                )
            else:
                await self._record_tokens(usage.total_tokens, "oracle")

        verdict, inferred = infer_can_continue(verdict, self.config)
        if inferred:
            logger.info("Inferring CanContinue=true from IsComplete=false")
            await self._emit(
                AutonomousEventType.CAN_CONTINUE_INFERRED,
                "Inferring CanContinue=true from IsComplete=false",
            )

        self._last_verdict = verdict.as_verdict()
        await self.event_bus.emit_oracle_verified(
            session_id=self.session_id,
            iteration=iteration,
            is_complete=verdict.is_complete,
            can_continue=verdict.can_continue,
            confidence=verdict.confidence,
            analysis=verdict.analysis,
        )

        reflection = verdict.reflection
        if reflection is not None and self.config.enable_reflection:
            self._context = self._context.with_learning(reflection.to_learning(iteration))
            self._context = self._context.with_reflection(reflection.to_insight())
            await self._emit(
                AutonomousEventType.REFLECTION_CAPTURED,
                f"Reflection: {reflection.lessons_learned or 'captured'}",
            )

        return verdict

    # ------------------------------------------------------------------
    # Human-in-the-loop
    # ------------------------------------------------------------------

    def _approval_required(self, point: InterventionPoint) -> bool:
        return (
            self.config.enable_human_in_the_loop
            and point in self.config.required_approval_points
            and self.human_in_the_loop is not None
            and self.human_in_the_loop.is_available
        )

    async def _request_approval(
        self,
        point: InterventionPoint,
        summary: str,
        task_id: str | None,
    ) -> ApprovalResponse | None:
        """None when no approval is required at this point."""
        if not self._approval_required(point):
            return None

        request = ApprovalRequest(
            point=point,
            summary=summary,
            session_id=self.session_id,
            task_id=task_id,
        )
        await self._emit(
            AutonomousEventType.HUMAN_APPROVAL_REQUESTED,
            f"Approval requested: {summary}",
            point=point.value,
        )

        try:
            response = await asyncio.wait_for(
                self.human_in_the_loop.request_approval(request),
                timeout=self.config.human_approval_timeout_seconds,
            )
        except TimeoutError:
            if self.config.auto_approve_on_timeout:
                response = ApprovalResponse.timeout(request.request_id)
            else:
                response = ApprovalResponse(
                    request_id=request.request_id,
                    decision=ApprovalDecision.REJECTED,
                    feedback="Approval timed out",
                )

        await self._emit(
            AutonomousEventType.HUMAN_APPROVAL_RECEIVED,
            f"Approval received: {response.decision.value}",
            decision=response.decision.value,
        )
        if response.feedback:
            self._context = self._context.with_human_feedback(response.feedback)
        return response

    async def _request_feedback(
        self,
        original_prompt: str,
        output: str,
        task_id: str,
        verdict: AnyVerdict | None,
    ) -> None:
        if self.human_in_the_loop is None or not self.human_in_the_loop.is_available:
            return
        feedback = await self.human_in_the_loop.request_feedback(
            FeedbackRequest(
                original_prompt=original_prompt,
                execution_output=output,
                task_id=task_id,
                oracle_analysis=verdict.analysis if verdict is not None else None,
            )
        )
        await self._emit(
            AutonomousEventType.HUMAN_FEEDBACK_RECEIVED,
            f"Feedback received: satisfactory={feedback.is_satisfactory}",
            is_satisfactory=feedback.is_satisfactory,
        )
        if feedback.comments and self.config.enable_context_tracking:
            self._context = self._context.with_human_feedback(feedback.comments)

    # ------------------------------------------------------------------
    # Saturation
    # ------------------------------------------------------------------

    def _on_action_required(self, event: ActionRequiredEvent) -> None:
        self._pending_action = event

    async def _record_usage(self, result: TaskResult) -> int:
        if result.token_usage is not None:
            tokens = result.token_usage.total_tokens
        else:
            tokens = self.token_counter(result.output or "")
        await self._record_tokens(tokens, "response")
        return tokens

    async def _record_tokens(self, tokens: int, source: str) -> None:
        self._total_tokens += tokens
        self.saturation_monitor.record_usage(tokens, source)

        changes = list(self._pending_level_changes)
        self._pending_level_changes.clear()
        for change in changes:
            await self._emit(
                AutonomousEventType.SATURATION_CHANGED,
                f"Context saturation {change.previous_level.label} -> {change.new_level.label}",
                previous_level=change.previous_level.label,
                new_level=change.new_level.label,
                percentage=change.state.percentage,
            )

        action, self._pending_action = self._pending_action, None
        if action is not None:
            await self._reduce_context(action)

    async def _reduce_context(self, action: ActionRequiredEvent) -> None:
        if self.context_reducer is None:
            logger.info(
                f"Saturation action {action.action.value} requested, no context reducer configured"
            )
            return

        before = action.state
        self._context = await self.context_reducer.reduce(self._context, before)
        self.saturation_monitor.reset_iteration()
        await self._emit(
            AutonomousEventType.CONTEXT_REDUCED,
            f"Context reduced ({action.action.value}, {before.percentage:.1f}% used)",
            action=action.action.value,
            tokens_before=before.current_tokens,
            suggested_tokens_to_free=action.suggested_tokens_to_free,
        )

    # ------------------------------------------------------------------
    # History, checkpoints, events
    # ------------------------------------------------------------------

    async def _on_task_output(self, output: TaskOutput) -> None:
        await self._emit(
            AutonomousEventType.TASK_OUTPUT,
            output.content,
            request_id=output.request_id,
            output_type=output.type.value,
        )

    def _add_history(
        self,
        request: TaskRequest,
        result: TaskResult,
        iteration: int,
        oracle_iteration: int,
        verdict: AnyVerdict | None,
        tokens: int,
        started_at: str,
    ) -> None:
        self._history.append(
            ExecutionHistoryEntry(
                iteration=iteration,
                oracle_iteration=oracle_iteration,
                request_id=request.request_id,
                prompt=request.prompt,
                output=result.output,
                success=result.success,
                error=result.error,
                verdict=verdict.as_verdict() if verdict is not None else None,
                used_fallback=self._executor.last_used_fallback,
                tokens_used=tokens,
                started_at=started_at,
            )
        )

    async def _emit_history_added(self, request: TaskRequest) -> None:
        await self._emit(
            AutonomousEventType.HISTORY_ENTRY_ADDED,
            f"History entry added: {request.request_id}",
            request_id=request.request_id,
        )

    async def _create_checkpoint(self) -> None:
        checkpoint = ExecutionCheckpoint.create(
            session_id=self.session_id,
            iteration=self._current_iteration,
            state=self._state.value,
            pending_prompts=self.pending_prompts,
            context=self._context.to_dict(),
            history=self._history,
            total_tokens=self._total_tokens,
            is_clean=not self._had_failures,
        )
        self._checkpoints.append(checkpoint)
        if self.checkpoint_store is not None:
            await self.checkpoint_store.save_checkpoint(checkpoint)
        await self._emit(
            AutonomousEventType.CHECKPOINT_CREATED,
            f"Checkpoint created: {checkpoint.checkpoint_id}",
            checkpoint_id=checkpoint.checkpoint_id,
        )

    async def _halt(
        self,
        state: AutonomousState,
        event_type: AutonomousEventType,
        message: str,
        **data: Any,
    ) -> None:
        self._state = state
        self._completed_at = datetime.now()
        logger.info(f"Session halted ({state.value}): {message}")
        await self._emit(event_type, message, state=state.value, **data)

    async def _emit(
        self,
        event_type: AutonomousEventType,
        message: str,
        request_id: str | None = None,
        **data: Any,
    ) -> AutonomousEvent:
        return await self.event_bus.emit(
            event_type,
            self.session_id,
            message,
            iteration=self._current_iteration,
            request_id=request_id,
            **data,
        )
