"""
Tests for the AutonomousOrchestrator control loop.

Covers:
- completion modes and the verdict precedence rules
- can_continue inference and auto-continue prompts
- in-iteration refinement from oracle suggestions
- retry exhaustion, continue_on_failure and oracle failures
- stop / cancel / pause / resume
- saturation-triggered context reduction
- human-in-the-loop approval points
- checkpoints and restore

Every halt must publish exactly one terminal event.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from autonomy.config import AutonomousConfig, CompletionMode
from autonomy.context.provider import KeepRecentReducer
from autonomy.context.saturation import SaturationConfig, SaturationMonitor
from autonomy.errors import CheckpointError
from autonomy.models.checkpoint import ExecutionCheckpoint
from autonomy.models.execution_context import ErrorCategory
from autonomy.models.task import TaskOutput, TaskResult, TokenCount
from autonomy.models.verdict import OracleConfig, OracleReflection, OracleVerdict, TokenUsage
from autonomy.oracle.llm_verifier import parse_verdict
from autonomy.resilience.fallback import StringListFallbackStrategy
from autonomy.runtime.builder import OrchestratorBuilder
from autonomy.runtime.event_bus import AutonomousEventType
from autonomy.runtime.hitl import (
    ApprovalDecision,
    ApprovalResponse,
    AutoApproveHumanInTheLoop,
    FeedbackResponse,
    InterventionPoint,
)
from autonomy.runtime.orchestrator import AutonomousOrchestrator, AutonomousState
from autonomy.storage.checkpoint_store import CheckpointStore

ET = AutonomousEventType


class RecordingExecutor:
    """Succeeds with ``done: <prompt>`` unless the prompt is in ``fail_prompts``."""

    def __init__(self, fail_prompts=(), token_usage: TokenCount | None = None):
        self.fail_prompts = set(fail_prompts)
        self.token_usage = token_usage
        self.requests = []

    @property
    def prompts(self) -> list[str]:
        return [r.prompt for r in self.requests]

    async def execute(self, request, on_output=None):
        self.requests.append(request)
        if request.prompt in self.fail_prompts:
            raise RuntimeError(f"cannot do {request.prompt}")
        if on_output is not None:
            await on_output(TaskOutput(request_id=request.request_id, content="working"))
        return TaskResult(
            request_id=request.request_id,
            success=True,
            output=f"done: {request.prompt}",
            token_usage=self.token_usage,
        )


class BlockingExecutor:
    """Never finishes; signals once it has started."""

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, request, on_output=None):
        self.started.set()
        await asyncio.Event().wait()


class ScriptedOracle:
    """Returns verdicts in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *verdicts):
        self.verdicts = list(verdicts)
        self.calls = []

    @property
    def is_configured(self) -> bool:
        return True

    async def verify(self, original_prompt, execution_output, config=None):
        self.calls.append((original_prompt, execution_output))
        item = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def build_verification_prompt(
        self, original_prompt, execution_output, config=None, context_summary=""
    ):
        return f"{original_prompt}\n{execution_output}"


class HangingOracle(ScriptedOracle):
    async def verify(self, original_prompt, execution_output, config=None):
        await asyncio.Event().wait()


class ScriptedHuman:
    """Answers every approval request with the same decision."""

    def __init__(self, decision=ApprovalDecision.APPROVED, modified_prompt=None, hang=False):
        self.decision = decision
        self.modified_prompt = modified_prompt
        self.hang = hang
        self.requests = []
        self.feedback_requests = []

    @property
    def is_available(self) -> bool:
        return True

    async def request_approval(self, request):
        self.requests.append(request)
        if self.hang:
            await asyncio.Event().wait()
        return ApprovalResponse(
            request_id=request.request_id,
            decision=self.decision,
            modified_prompt=self.modified_prompt,
        )

    async def request_feedback(self, request):
        self.feedback_requests.append(request)
        return FeedbackResponse(request_id=request.request_id, comments="looks right")


def event_types(orchestrator) -> list[AutonomousEventType]:
    """Events of the session in publication order."""
    history = orchestrator.event_bus.get_history(session_id=orchestrator.session_id, limit=10_000)
    return [event.type for event in reversed(history)]


def terminal_events(orchestrator) -> list[AutonomousEventType]:
    history = orchestrator.event_bus.get_history(session_id=orchestrator.session_id, limit=10_000)
    return [event.type for event in history if event.is_terminal]


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


@pytest.fixture
def executor():
    return RecordingExecutor()


# --- Completion modes ---


class TestCompletion:
    @pytest.mark.asyncio
    async def test_queue_drained_without_oracle(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("first")
        orchestrator.enqueue_prompt("second")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        assert executor.prompts == ["first", "second"]
        assert status.current_iteration == 2
        assert ET.QUEUE_EMPTY in event_types(orchestrator)
        assert terminal_events(orchestrator) == [ET.COMPLETED]

    @pytest.mark.asyncio
    async def test_single_goal_runs_one_chain(self, executor):
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_completion_mode(CompletionMode.SINGLE_GOAL)
            .build()
        )
        orchestrator.enqueue_prompt("first")
        orchestrator.enqueue_prompt("second")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        assert executor.prompts == ["first"]
        assert status.pending_tasks == 1

    @pytest.mark.asyncio
    async def test_until_goal_achieved_with_no_work_waits(self, executor):
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_completion_mode(CompletionMode.UNTIL_GOAL_ACHIEVED)
            .build()
        )

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_WAITING
        assert executor.requests == []
        assert terminal_events(orchestrator) == [ET.STOPPED_WAITING]

    @pytest.mark.asyncio
    async def test_goal_achieved(self, executor):
        oracle = ScriptedOracle(
            OracleVerdict.continue_to_next_iteration("halfway"),
            OracleVerdict.goal_achieved("all done", confidence=0.9),
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .with_completion_mode(CompletionMode.UNTIL_GOAL_ACHIEVED)
            .build()
        )
        orchestrator.enqueue_prompt("write the report")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_GOAL_ACHIEVED
        assert status.goal_achieved is True
        assert status.current_iteration == 2
        assert executor.prompts == ["write the report", "Continue with iteration 2"]
        assert terminal_events(orchestrator) == [ET.GOAL_ACHIEVED]
        assert status.last_verdict.is_complete is True

    @pytest.mark.asyncio
    async def test_low_confidence_completion_waits_for_review(self, executor):
        oracle = ScriptedOracle(OracleVerdict.goal_achieved("probably done", confidence=0.6))
        orchestrator = OrchestratorBuilder().with_executor(executor).with_oracle(oracle).build()
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_WAITING
        assert status.goal_achieved is False
        assert terminal_events(orchestrator) == [ET.STOPPED_WAITING]

    @pytest.mark.asyncio
    async def test_complete_in_queue_mode_keeps_draining(self, executor):
        oracle = ScriptedOracle(OracleVerdict.goal_achieved("done", confidence=0.95))
        orchestrator = OrchestratorBuilder().with_executor(executor).with_oracle(oracle).build()
        orchestrator.enqueue_prompt("a")
        orchestrator.enqueue_prompt("b")

        status = await orchestrator.start()

        assert executor.prompts == ["a", "b"]
        assert status.state == AutonomousState.STOPPED_BY_GOAL_ACHIEVED

    @pytest.mark.asyncio
    async def test_cannot_continue_waits_for_input(self, executor):
        oracle = ScriptedOracle(OracleVerdict.progress("stuck", 0.8, continue_to_next=False))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .build()
        )
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_WAITING
        assert executor.prompts == ["task"]
        assert terminal_events(orchestrator) == [ET.STOPPED_WAITING]


# --- Auto-continue ---


class TestAutoContinue:
    @pytest.mark.asyncio
    async def test_inferred_can_continue_runs_to_max_iterations(self, executor):
        oracle = ScriptedOracle(
            OracleVerdict(is_complete=False, can_continue=False, analysis="partial", confidence=0.6)
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .with_infer_can_continue_from_complete()
            .with_max_iterations(3)
            .build()
        )
        orchestrator.enqueue_prompt("goal")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_MAX_ITERATIONS
        assert len(executor.requests) == 3
        types = event_types(orchestrator)
        assert types.count(ET.CAN_CONTINUE_INFERRED) == 3
        assert types.count(ET.AUTO_CONTINUING) == 3
        assert terminal_events(orchestrator) == [ET.MAX_ITERATIONS_REACHED]

        inferred = orchestrator.event_bus.get_history(ET.CAN_CONTINUE_INFERRED)[0]
        assert inferred.message == "Inferring CanContinue=true from IsComplete=false"
        continuing = orchestrator.event_bus.get_history(ET.AUTO_CONTINUING, limit=3)[::-1]
        assert continuing[0].message == "AutoContinuing to iteration 2"

    @pytest.mark.asyncio
    async def test_suggestion_becomes_next_prompt(self, executor):
        oracle = ScriptedOracle(
            OracleVerdict(
                can_continue=True,
                next_prompt_suggestion="now add tests",
                confidence=0.7,
            ),
            OracleVerdict.goal_achieved("done"),
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .build()
        )
        orchestrator.enqueue_prompt("write code")

        await orchestrator.start()

        assert executor.prompts == ["write code", "now add tests"]
        continuing = orchestrator.event_bus.get_history(ET.AUTO_CONTINUING)[0]
        assert continuing.data["from_suggestion"] is True

    @pytest.mark.asyncio
    async def test_custom_template(self, executor):
        oracle = ScriptedOracle(
            OracleVerdict(can_continue=True, analysis="missing conclusion", confidence=0.7),
            OracleVerdict.goal_achieved("done"),
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue("Round {iteration}. Fix: {oracle_analysis}")
            .build()
        )
        orchestrator.enqueue_prompt("essay")

        await orchestrator.start()

        assert executor.prompts[1] == "Round 2. Fix: missing conclusion"


# --- Refinement within an iteration ---


class TestRefinement:
    @pytest.mark.asyncio
    async def test_refined_prompt_retried_in_same_iteration(self, executor):
        oracle = ScriptedOracle(
            OracleVerdict.retry_with_refined_prompt("include the totals", "totals missing"),
            OracleVerdict.goal_achieved("complete", confidence=0.9),
        )
        orchestrator = OrchestratorBuilder().with_executor(executor).with_oracle(oracle).build()
        request = orchestrator.enqueue_prompt("summarize sales")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_GOAL_ACHIEVED
        assert status.current_iteration == 1
        assert executor.prompts == ["summarize sales", "include the totals"]
        assert executor.requests[1].request_id == f"{request.request_id}_2"
        # The oracle keeps judging against the dequeued prompt
        assert [call[0] for call in oracle.calls] == ["summarize sales", "summarize sales"]
        assert ET.ORACLE_RETRYING in event_types(orchestrator)

        history = orchestrator.get_history()
        assert [entry.oracle_iteration for entry in history] == [1, 2]
        assert history[1].verdict.is_complete is True

    @pytest.mark.asyncio
    async def test_refinement_bounded_by_max_oracle_iterations(self, executor):
        oracle = ScriptedOracle(OracleVerdict.retry_with_refined_prompt("again", "still wrong"))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_max_oracle_iterations(2)
            .with_completion_mode(CompletionMode.SINGLE_GOAL)
            .build()
        )
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert len(executor.requests) == 2
        assert status.state == AutonomousState.COMPLETED


# --- Failures ---


class TestFailures:
    @pytest.mark.asyncio
    async def test_exhausted_retries_stop_with_error(self):
        executor = RecordingExecutor(fail_prompts={"bad"})
        orchestrator = OrchestratorBuilder().with_executor(executor).with_retry(2, delay_ms=10).build()
        orchestrator.enqueue_prompt("bad")
        orchestrator.enqueue_prompt("never reached")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_ERROR
        assert status.last_error == "cannot do bad"
        assert len(executor.requests) == 3
        assert event_types(orchestrator).count(ET.RETRY_ATTEMPT) == 2
        assert terminal_events(orchestrator) == [ET.EXECUTION_FAILED]

    @pytest.mark.asyncio
    async def test_continue_on_failure(self):
        executor = RecordingExecutor(fail_prompts={"bad"})
        orchestrator = OrchestratorBuilder().with_executor(executor).continue_on_failure().build()
        orchestrator.enqueue_prompt("bad")
        orchestrator.enqueue_prompt("good")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        assert executor.prompts == ["bad", "good"]
        assert ET.TASK_FAILED in event_types(orchestrator)

        resolutions = orchestrator.execution_context.error_resolutions
        assert len(resolutions) == 1
        assert resolutions[0].category == ErrorCategory.RUNTIME
        assert resolutions[0].was_successful is False

        checkpoints = orchestrator.get_checkpoints()
        assert len(checkpoints) == 2
        assert all(not cp.is_clean for cp in checkpoints)

    @pytest.mark.asyncio
    async def test_fallback_substitutes_failed_task(self):
        executor = RecordingExecutor(fail_prompts={"bad"})
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_fallback_strategy(StringListFallbackStrategy(["fallback answer"]))
            .build()
        )
        orchestrator.enqueue_prompt("bad")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        history = orchestrator.get_history()
        assert history[0].output == "fallback answer"
        assert history[0].used_fallback is True

    @pytest.mark.asyncio
    async def test_oracle_error_degrades_to_continuable_verdict(self, executor):
        oracle = ScriptedOracle(RuntimeError("verifier down"))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .with_max_iterations(2)
            .build()
        )
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_MAX_ITERATIONS
        assert event_types(orchestrator).count(ET.ORACLE_ERROR) == 2
        assert status.last_verdict.analysis == "Oracle error: verifier down"
        assert status.last_verdict.confidence == 0.0

    @pytest.mark.asyncio
    async def test_oracle_timeout(self, executor):
        config = AutonomousConfig(
            oracle_config=OracleConfig(timeout_seconds=0.01),
            completion_mode=CompletionMode.SINGLE_GOAL,
        )
        orchestrator = AutonomousOrchestrator(executor, config=config, oracle=HangingOracle())
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        error = orchestrator.event_bus.get_history(ET.ORACLE_ERROR)[0]
        assert "timed out" in error.message

    @pytest.mark.asyncio
    async def test_negative_oracle_usage_degrades_to_error_verdict(self, executor):
        class NegativeUsageOracle(ScriptedOracle):
            async def verify(self, original_prompt, execution_output, config=None):
                return parse_verdict(
                    '{"isComplete": false, "canContinue": true, "confidence": 0.4,'
                    ' "tokenUsage": {"inputTokens": -50, "outputTokens": 0}}'
                )

        config = AutonomousConfig(completion_mode=CompletionMode.SINGLE_GOAL)
        orchestrator = AutonomousOrchestrator(
            executor, config=config, oracle=NegativeUsageOracle(None)
        )
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        assert ET.ORACLE_ERROR in event_types(orchestrator)
        assert status.last_verdict.analysis.startswith("Oracle error")
        assert orchestrator.saturation_state.current_tokens == 0

    @pytest.mark.asyncio
    async def test_unvalidated_negative_usage_is_not_recorded(self, executor):
        verdict = OracleVerdict.goal_achieved("done").model_copy(
            update={"token_usage": TokenUsage.model_construct(input_tokens=-50, output_tokens=0)}
        )
        orchestrator = (
            OrchestratorBuilder().with_executor(executor).with_oracle(ScriptedOracle(verdict)).build()
        )
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.goal_achieved is True
        assert ET.ORACLE_ERROR not in event_types(orchestrator)
        assert orchestrator.saturation_state.current_tokens == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_publishes_error_event(self, executor):
        def broken_counter(text):
            raise ValueError("tokenizer unavailable")

        orchestrator = (
            OrchestratorBuilder().with_executor(executor).with_token_counter(broken_counter).build()
        )
        orchestrator.enqueue_prompt("task")

        with pytest.raises(ValueError):
            await orchestrator.start()

        assert orchestrator.state == AutonomousState.STOPPED_BY_ERROR
        assert terminal_events(orchestrator) == [ET.ERROR]


# --- Control ---


class TestControl:
    @pytest.mark.asyncio
    async def test_cooperative_stop(self, executor):
        oracle = ScriptedOracle(OracleVerdict.continue_to_next_iteration("more"))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .build()
        )
        orchestrator.enqueue_prompt("task")

        async def stop_after_first(event):
            orchestrator.stop()

        orchestrator.subscribe(stop_after_first, [ET.ITERATION_COMPLETED])

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_USER
        assert len(executor.requests) == 1
        assert terminal_events(orchestrator) == [ET.STOPPED]

    @pytest.mark.asyncio
    async def test_cancel_propagates(self):
        executor = BlockingExecutor()
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("slow task")

        task = asyncio.create_task(orchestrator.start())
        await executor.started.wait()
        orchestrator.stop(cancel=True)

        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.state == AutonomousState.STOPPED_BY_USER
        assert terminal_events(orchestrator) == [ET.STOPPED]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("first")
        orchestrator.enqueue_prompt("second")
        paused = asyncio.Event()

        async def pause_once(event):
            if not paused.is_set():
                await orchestrator.pause()
                paused.set()

        orchestrator.subscribe(pause_once, [ET.ITERATION_COMPLETED])

        task = asyncio.create_task(orchestrator.start())
        await paused.wait()

        assert orchestrator.state == AutonomousState.PAUSED
        assert executor.prompts == ["first"]

        await orchestrator.resume()
        status = await task

        assert status.state == AutonomousState.COMPLETED
        assert executor.prompts == ["first", "second"]
        types = event_types(orchestrator)
        assert types.index(ET.PAUSED) < types.index(ET.RESUMED)

    @pytest.mark.asyncio
    async def test_restart_resets_counters(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("first")
        await orchestrator.start()

        orchestrator.enqueue_prompt("second")
        status = await orchestrator.start()

        assert status.current_iteration == 1
        assert len(orchestrator.get_history()) == 1
        assert orchestrator.execution_context.original_goal == "second"

    @pytest.mark.asyncio
    async def test_clear_queue(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("a")
        await orchestrator.clear_queue()

        assert orchestrator.status.pending_tasks == 0
        assert event_types(orchestrator) == [ET.QUEUE_CLEARED]

    @pytest.mark.asyncio
    async def test_output_forwarded_as_events(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        orchestrator.enqueue_prompt("a")
        received = []

        async def on_output(event):
            received.append(event.message)

        orchestrator.subscribe(on_output, [ET.TASK_OUTPUT])
        await orchestrator.start()

        assert received == ["working"]


# --- Context ---


class TestContext:
    @pytest.mark.asyncio
    async def test_reflection_reaches_next_request(self, executor):
        reflection = OracleReflection(lessons_learned="use a table", what_could_improve="layout")
        oracle = ScriptedOracle(
            OracleVerdict(can_continue=True, confidence=0.7, reflection=reflection),
            OracleVerdict.goal_achieved("done"),
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .build()
        )
        orchestrator.enqueue_prompt("report")

        await orchestrator.start()

        assert executor.requests[0].context_summary == "No prior context."
        assert "use a table" in executor.requests[1].context_summary
        assert ET.REFLECTION_CAPTURED in event_types(orchestrator)
        assert orchestrator.execution_context.previous_outputs == (
            "done: report",
            "done: Continue with iteration 2",
        )

    @pytest.mark.asyncio
    async def test_reflection_ignored_when_disabled(self, executor):
        reflection = OracleReflection(lessons_learned="use a table")
        verdict = OracleVerdict.goal_achieved("done", 0.9).model_copy(
            update={"reflection": reflection}
        )
        oracle = ScriptedOracle(verdict)
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_reflection(False)
            .build()
        )
        orchestrator.enqueue_prompt("report")

        await orchestrator.start()

        assert orchestrator.execution_context.learnings == ()

    @pytest.mark.asyncio
    async def test_long_output_truncated_in_context(self):
        class LongExecutor(RecordingExecutor):
            async def execute(self, request, on_output=None):
                return TaskResult(request_id=request.request_id, success=True, output="x" * 1500)

        orchestrator = OrchestratorBuilder().with_executor(LongExecutor()).build()
        orchestrator.enqueue_prompt("a")

        await orchestrator.start()

        stored = orchestrator.execution_context.previous_outputs[0]
        assert len(stored) == 1003
        assert stored.endswith("...")

    @pytest.mark.asyncio
    async def test_saturation_triggers_context_reduction(self):
        executor = RecordingExecutor(token_usage=TokenCount(input_tokens=50, output_tokens=30))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_saturation_monitor(SaturationMonitor(SaturationConfig(max_tokens=100)))
            .with_context_reducer(KeepRecentReducer(keep=1))
            .build()
        )
        orchestrator.enqueue_prompt("a")

        status = await orchestrator.start()

        types = event_types(orchestrator)
        assert ET.SATURATION_CHANGED in types
        assert ET.CONTEXT_REDUCED in types
        assert types.index(ET.SATURATION_CHANGED) < types.index(ET.CONTEXT_REDUCED)
        assert orchestrator.saturation_state.current_tokens == 0
        assert status.total_tokens == 80

    @pytest.mark.asyncio
    async def test_saturation_without_reducer_only_reports(self):
        executor = RecordingExecutor(token_usage=TokenCount(input_tokens=90, output_tokens=0))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_saturation_monitor(SaturationConfig(max_tokens=100))
            .build()
        )
        orchestrator.enqueue_prompt("a")

        await orchestrator.start()

        types = event_types(orchestrator)
        assert ET.SATURATION_CHANGED in types
        assert ET.CONTEXT_REDUCED not in types
        assert orchestrator.saturation_state.current_tokens == 90

    @pytest.mark.asyncio
    async def test_provide_feedback(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        await orchestrator.provide_feedback("shorter please")
        orchestrator.enqueue_prompt("a")

        await orchestrator.start()

        assert "shorter please" in executor.requests[0].context_summary


# --- Human-in-the-loop ---


class TestHumanInTheLoop:
    @pytest.mark.asyncio
    async def test_rejected_before_start(self, executor):
        human = ScriptedHuman(ApprovalDecision.REJECTED)
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_human_in_the_loop(human, {InterventionPoint.BEFORE_TASK_START})
            .build()
        )
        orchestrator.enqueue_prompt("risky")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_USER
        assert executor.requests == []
        assert terminal_events(orchestrator) == [ET.STOPPED]

    @pytest.mark.asyncio
    async def test_modified_prompt_before_start(self, executor):
        human = ScriptedHuman(ApprovalDecision.MODIFY_AND_APPROVE, modified_prompt="safer")
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_human_in_the_loop(human, {InterventionPoint.BEFORE_TASK_START})
            .build()
        )
        orchestrator.enqueue_prompt("risky")

        await orchestrator.start()

        assert executor.prompts == ["safer"]

    @pytest.mark.asyncio
    async def test_uncertain_oracle_asks_human(self, executor):
        human = AutoApproveHumanInTheLoop()
        oracle = ScriptedOracle(OracleVerdict.progress("unsure", 0.3, continue_to_next=False))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_human_in_the_loop(human)
            .build()
        )
        orchestrator.enqueue_prompt("task")

        await orchestrator.start()

        assert len(human.approval_requests) == 1
        assert human.approval_requests[0].point == InterventionPoint.ORACLE_UNCERTAIN
        types = event_types(orchestrator)
        assert ET.HUMAN_APPROVAL_REQUESTED in types
        assert ET.HUMAN_REVIEW_RECOMMENDED not in types

    @pytest.mark.asyncio
    async def test_uncertain_oracle_without_human_recommends_review(self, executor):
        oracle = ScriptedOracle(OracleVerdict.progress("unsure", 0.3, continue_to_next=False))
        orchestrator = OrchestratorBuilder().with_executor(executor).with_oracle(oracle).build()
        orchestrator.enqueue_prompt("task")

        await orchestrator.start()

        assert ET.HUMAN_REVIEW_RECOMMENDED in event_types(orchestrator)

    @pytest.mark.asyncio
    async def test_reviewer_prompt_reexecutes_in_iteration(self, executor):
        human = ScriptedHuman(ApprovalDecision.MODIFY_AND_APPROVE, modified_prompt="be precise")
        oracle = ScriptedOracle(
            OracleVerdict.progress("vague", 0.2),
            OracleVerdict.goal_achieved("precise now", 0.9),
        )
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_human_in_the_loop(human)
            .build()
        )
        orchestrator.enqueue_prompt("explain")

        status = await orchestrator.start()

        assert executor.prompts == ["explain", "be precise"]
        assert status.state == AutonomousState.STOPPED_BY_GOAL_ACHIEVED

    @pytest.mark.asyncio
    async def test_approval_timeout_rejects_when_not_auto_approved(self, executor):
        human = ScriptedHuman(hang=True)
        config = AutonomousConfig(
            enable_human_in_the_loop=True,
            required_approval_points=frozenset({InterventionPoint.BEFORE_TASK_START}),
            human_approval_timeout_seconds=0.01,
            auto_approve_on_timeout=False,
        )
        orchestrator = AutonomousOrchestrator(executor, config=config, human_in_the_loop=human)
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_USER
        assert executor.requests == []

    @pytest.mark.asyncio
    async def test_approval_timeout_auto_approves(self, executor):
        human = ScriptedHuman(hang=True)
        config = AutonomousConfig(
            enable_human_in_the_loop=True,
            required_approval_points=frozenset({InterventionPoint.BEFORE_TASK_START}),
            human_approval_timeout_seconds=0.01,
        )
        orchestrator = AutonomousOrchestrator(executor, config=config, human_in_the_loop=human)
        orchestrator.enqueue_prompt("task")

        status = await orchestrator.start()

        assert status.state == AutonomousState.COMPLETED
        assert executor.prompts == ["task"]

    @pytest.mark.asyncio
    async def test_feedback_on_complete(self, executor):
        human = ScriptedHuman()
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_human_in_the_loop(human, set(), request_feedback_on_complete=True)
            .build()
        )
        orchestrator.enqueue_prompt("task")

        await orchestrator.start()

        assert len(human.feedback_requests) == 1
        assert human.requests == []
        assert "looks right" in orchestrator.execution_context.human_feedback

    @pytest.mark.asyncio
    async def test_result_rejected_after_task(self, executor):
        human = ScriptedHuman(ApprovalDecision.REJECTED)
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_human_in_the_loop(human, {InterventionPoint.AFTER_TASK_COMPLETE})
            .build()
        )
        orchestrator.enqueue_prompt("first")
        orchestrator.enqueue_prompt("second")

        status = await orchestrator.start()

        assert status.state == AutonomousState.STOPPED_BY_USER
        assert executor.prompts == ["first"]
        assert human.requests[0].point == InterventionPoint.AFTER_TASK_COMPLETE
        assert terminal_events(orchestrator) == [ET.STOPPED]


# --- Checkpoints ---


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_checkpoints_persisted_and_restored(self, tmp_path, executor):
        store = CheckpointStore(tmp_path)
        oracle = ScriptedOracle(OracleVerdict.continue_to_next_iteration("keep going"))
        orchestrator = (
            OrchestratorBuilder()
            .with_executor(executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .with_max_iterations(2)
            .with_checkpoint_store(store)
            .with_session_id("session-a")
            .build()
        )
        orchestrator.enqueue_prompt("long task")

        await orchestrator.start()

        summaries = await store.list_checkpoints("session-a")
        assert len(summaries) == 2
        latest = await store.load_checkpoint("session-a")
        assert latest.iteration == 2
        assert latest.pending_prompts == ["Continue with iteration 3"]
        assert len(latest.history) == 2

        resumed_executor = RecordingExecutor()
        resumed = (
            OrchestratorBuilder()
            .with_executor(resumed_executor)
            .with_oracle(oracle)
            .with_auto_continue()
            .with_max_iterations(3)
            .with_session_id("session-a")
            .build()
        )
        await resumed.restore_checkpoint(latest)
        status = await resumed.start(resume=True)

        assert resumed_executor.prompts == ["Continue with iteration 3"]
        assert status.current_iteration == 3
        assert status.state == AutonomousState.STOPPED_BY_MAX_ITERATIONS
        assert len(resumed.get_history()) == 3
        assert resumed.execution_context.original_goal == "long task"
        assert ET.CHECKPOINT_RESTORED in event_types(resumed)

    @pytest.mark.asyncio
    async def test_restore_rejects_other_session(self, executor):
        orchestrator = OrchestratorBuilder().with_executor(executor).build()
        checkpoint = ExecutionCheckpoint.create(
            session_id="someone-else",
            iteration=1,
            state="running",
            pending_prompts=[],
            context={"session_id": "someone-else"},
            history=[],
        )

        with pytest.raises(CheckpointError):
            await orchestrator.restore_checkpoint(checkpoint)

    @pytest.mark.asyncio
    async def test_checkpointing_disabled(self, executor):
        orchestrator = (
            OrchestratorBuilder().with_executor(executor).with_checkpointing(False).build()
        )
        orchestrator.enqueue_prompt("a")

        await orchestrator.start()

        assert orchestrator.get_checkpoints() == []
        assert ET.CHECKPOINT_CREATED not in event_types(orchestrator)
