import asyncio

import pytest

from taskloop.agent import AgentClient
from taskloop.backends import BackendProcessError, InvokeOptions, ScriptedBackend
from taskloop.config import EngineConfig
from taskloop.decision import ACCEPTANCE_REASONING, STAGNATION_REASONING
from taskloop.engine import TaskEngine
from taskloop.errors import EvaluationInProgressError, InvalidTransitionError
from taskloop.evaluator import QualityEvaluator, StaticQualityEvaluator
from taskloop.events import EventBus, TaskEvent
from taskloop.lifecycle import cancel
from taskloop.models import EvaluationResult, Task, TaskContext
from taskloop.specialists import CriteriaVerifier, PlannerAgent
from taskloop.steps import StepExecutor

PLAN_NEEDLE = "Generate a detailed execution plan"
CHECK_NEEDLE = "Check if the following acceptance criteria"


def _backend(plan: str = "- Create the file\n- Write tests for it", verdict: str = "true"):
    return ScriptedBackend(routes=[(PLAN_NEEDLE, plan), (CHECK_NEEDLE, verdict)], default="done")


def _build_engine(
    backend: ScriptedBackend,
    *,
    evaluator: QualityEvaluator | None = None,
    config: EngineConfig | None = None,
    events: EventBus | None = None,
) -> TaskEngine:
    events = events or EventBus()
    client = AgentClient(backend, InvokeOptions(timeout_seconds=5.0))
    return TaskEngine(
        planner=PlannerAgent(client),
        executor=StepExecutor(client, events),
        verifier=CriteriaVerifier(client),
        evaluator=evaluator,
        config=config,
        events=events,
    )


def _context(**task_fields) -> TaskContext:
    task_fields.setdefault("id", "t1")
    task_fields.setdefault("title", "Create hello.txt")
    return TaskContext(task=Task(**task_fields))


def test_first_iteration_meeting_all_criteria_completes() -> None:
    events = EventBus()
    engine = _build_engine(_backend(), events=events)
    context = _context(acceptance_criteria=("file exists",))

    asyncio.run(engine.execute(context))

    assert context.status == "completed"
    assert len(context.iterations) == 1
    (iteration,) = context.iterations
    assert [step.status for step in iteration.steps] == ["completed", "completed"]
    assert [step.type for step in iteration.steps] == ["implementation", "testing"]
    assert iteration.decision is not None
    assert iteration.decision.decision == "complete"
    assert iteration.decision.reasoning == ACCEPTANCE_REASONING
    assert context.progress == 100
    assert context.metrics.iteration_count == 1
    # planner + two steps + one acceptance check
    assert context.metrics.cost.api_calls == 4
    assert context.metrics.cost.estimated_cost == pytest.approx(0.04)
    assert context.start_time is not None and context.end_time is not None
    assert context.start_time <= context.end_time
    kinds = [event.kind for event in events.history]
    assert kinds[0] == "task_started"
    assert kinds[-1] == "task_completed"
    assert kinds.count("step_started") == 2


def test_step_prompts_carry_description_and_title() -> None:
    backend = _backend()
    engine = _build_engine(backend)

    asyncio.run(engine.execute(_context(acceptance_criteria=("file exists",))))

    assert "Create the file\n\nTask: Create hello.txt" in backend.prompts()


def test_duration_limit_fails_after_the_iteration_is_recorded() -> None:
    engine = _build_engine(_backend(), config=EngineConfig(max_duration_minutes=0))
    context = _context(acceptance_criteria=("file exists",))

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    assert len(context.iterations) == 1
    assert context.iterations[0].decision is not None
    assert context.iterations[0].decision.decision == "complete"
    assert context.errors[-1].code == "DurationExceeded"
    assert context.errors[-1].severity == "high"


def test_iteration_cap_fails_task() -> None:
    engine = _build_engine(_backend(), config=EngineConfig(max_iterations=3))
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    assert len(context.iterations) == 3
    assert all(item.decision and item.decision.decision == "continue"
               for item in context.iterations)
    assert context.errors[-1].code == "MaxIterationsExceeded"


def test_zero_iteration_cap_fails_without_running() -> None:
    backend = _backend()
    engine = _build_engine(backend, config=EngineConfig(max_iterations=0))
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    assert context.iterations == []
    assert backend.calls == []


def test_cancel_mid_iteration_discards_the_partial_iteration() -> None:
    events = EventBus()
    context = _context(acceptance_criteria=("file exists",))
    events.subscribe(lambda event: cancel(context), kinds=["step_started"])
    engine = _build_engine(_backend(), events=events)

    asyncio.run(engine.execute(context))

    assert context.status == "cancelled"
    assert context.iterations == []
    assert context.end_time is not None
    assert [event.kind for event in events.history].count("step_started") == 1


def test_empty_plan_aborts_task() -> None:
    engine = _build_engine(_backend(plan="   "))
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    assert len(context.iterations) == 1
    decision = context.iterations[0].decision
    assert decision is not None and decision.decision == "abort"
    assert decision.confidence == 1.0
    codes = [error.code for error in context.errors]
    assert codes == ["IterationFailed", "Aborted"]
    assert context.errors[0].severity == "critical"
    assert context.errors[0].type == "system"


def test_flat_quality_scores_escalate() -> None:
    events = EventBus()
    evaluator = StaticQualityEvaluator([70.0, 72.0, 68.0])
    engine = _build_engine(_backend(), evaluator=evaluator, events=events)
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "escalated"
    # evaluations run on the first, third and fifth iterations
    assert len(context.iterations) == 5
    assert [item.evaluation is not None for item in context.iterations] == [
        True, False, True, False, True,
    ]
    assert context.iterations[-1].decision is not None
    assert context.iterations[-1].decision.reasoning == STAGNATION_REASONING
    assert context.progress == 72.0
    assert events.history[-1].kind == "task_escalated"
    assert context.end_time is not None


def test_failing_steps_abort_on_error_rate() -> None:
    backend = ScriptedBackend(
        routes=[
            (PLAN_NEEDLE, "- Create the file\n- Break the build\n- Break the tests"),
            ("Break", BackendProcessError("agent crashed", backend="scripted", exit_code=2)),
        ]
    )
    engine = _build_engine(backend)
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    (iteration,) = context.iterations
    assert [step.status for step in iteration.steps] == ["completed", "failed", "failed"]
    assert iteration.steps[1].output == "agent crashed"
    assert iteration.decision is not None
    assert iteration.decision.reasoning == "High error rate detected (67%)"
    step_errors = [error for error in context.errors if error.type == "execution"]
    assert [error.code for error in step_errors] == ["ProcessError", "ProcessError", "Aborted"]


def test_quality_threshold_completes_with_final_evaluation() -> None:
    evaluator = StaticQualityEvaluator([85.0])
    engine = _build_engine(_backend(), evaluator=evaluator)
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.status == "completed"
    decision = context.iterations[0].decision
    assert decision is not None and decision.confidence == 0.9
    assert evaluator.calls == 2
    assert len(context.evaluation_results) == 2
    assert context.metrics.quality_score == 85.0


def test_final_evaluation_can_be_disabled() -> None:
    evaluator = StaticQualityEvaluator([85.0])
    engine = _build_engine(
        _backend(), evaluator=evaluator, config=EngineConfig(final_evaluation=False)
    )

    asyncio.run(engine.execute(_context()))

    assert evaluator.calls == 1


def test_evaluation_in_progress_is_recorded_and_skipped() -> None:
    events = EventBus()
    evaluator = StaticQualityEvaluator([EvaluationInProgressError()])
    engine = _build_engine(
        _backend(), evaluator=evaluator, config=EngineConfig(max_iterations=1), events=events
    )
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.iterations[0].evaluation is None
    assert context.evaluation_results == []
    skipped = [error for error in context.errors if error.code == "AlreadyRunning"]
    assert len(skipped) == 1
    assert skipped[0].severity == "low"
    assert skipped[0].type == "evaluation"
    assert "evaluation_skipped" in [event.kind for event in events.history]


def test_evaluator_crash_does_not_fail_the_iteration() -> None:
    evaluator = StaticQualityEvaluator([RuntimeError("pytest missing")])
    engine = _build_engine(_backend(), evaluator=evaluator, config=EngineConfig(max_iterations=1))
    context = _context()

    asyncio.run(engine.execute(context))

    assert context.iterations[0].decision is not None
    assert context.iterations[0].decision.decision == "continue"
    assert [error.code for error in context.errors] == ["EvaluationFailed", "MaxIterationsExceeded"]


def test_failed_acceptance_check_keeps_iterating() -> None:
    engine = _build_engine(_backend(verdict="false"), config=EngineConfig(max_iterations=2))
    context = _context(acceptance_criteria=("file exists",))

    asyncio.run(engine.execute(context))

    assert context.status == "failed"
    assert len(context.iterations) == 2
    # planner + 2 steps + 1 check, twice
    assert context.metrics.cost.api_calls == 8


def test_engine_only_runs_pending_tasks() -> None:
    engine = _build_engine(_backend())
    context = _context()
    context.status = "completed"

    with pytest.raises(InvalidTransitionError):
        asyncio.run(engine.execute(context))


def test_step_output_is_streamed_as_events() -> None:
    events = EventBus()
    seen: list[TaskEvent] = []
    events.subscribe(seen.append, kinds=["step_output"])
    engine = _build_engine(_backend(), events=events)

    asyncio.run(engine.execute(_context(acceptance_criteria=("file exists",))))

    assert [event.detail["chunk"] for event in seen] == ["done", "done"]
    assert seen[0].step_id == "t1-iter-1-step-1"


class CancelOnCallEvaluator(QualityEvaluator):
    """Cancels the task from inside the ``cancel_on``-th evaluation."""

    def __init__(self, context: TaskContext, score: float, cancel_on: int) -> None:
        self.context = context
        self.score = score
        self.cancel_on = cancel_on
        self.calls = 0

    async def evaluate(self) -> EvaluationResult:
        self.calls += 1
        if self.calls == self.cancel_on:
            cancel(self.context)
        return EvaluationResult.from_score(self.score)


def test_cancel_during_final_evaluation_leaves_context_untouched() -> None:
    context = _context()
    evaluator = CancelOnCallEvaluator(context, 85.0, cancel_on=2)
    engine = _build_engine(_backend(), evaluator=evaluator)

    asyncio.run(engine.execute(context))

    assert evaluator.calls == 2
    assert context.status == "cancelled"
    assert len(context.evaluation_results) == 1
    assert context.progress == 85.0


def _scored(score: float, passed: int, failed: int, coverage: float) -> EvaluationResult:
    result = EvaluationResult.from_score(score)
    result.metrics.functionality.tests_passed = passed
    result.metrics.functionality.tests_failed = failed
    result.metrics.code_quality.test_coverage = coverage
    return result


def test_test_counters_never_decrease_across_evaluations() -> None:
    evaluator = StaticQualityEvaluator([_scored(60, 5, 1, 70.0), _scored(65, 3, 0, 50.0)])
    engine = _build_engine(_backend(), evaluator=evaluator, config=EngineConfig(max_iterations=3))
    context = _context()

    asyncio.run(engine.execute(context))

    assert evaluator.calls == 2
    assert context.metrics.quality_score == 65
    tests = context.metrics.test_results
    assert (tests.passed, tests.failed, tests.coverage) == (5, 1, 70.0)
