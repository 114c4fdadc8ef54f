from __future__ import annotations

import logging
from datetime import timedelta

from taskloop.config import EngineConfig
from taskloop.decision import DecisionPolicy, make_continuation_decision
from taskloop.errors import (
    DurationExceededError,
    EvaluationInProgressError,
    InvalidTransitionError,
    MaxIterationsExceededError,
)
from taskloop.evaluator import QualityEvaluator
from taskloop.events import EventBus
from taskloop.lifecycle import is_terminal, transition
from taskloop.models import (
    Clock,
    ContinuationDecision,
    ErrorSeverity,
    ErrorType,
    EvaluationResult,
    TaskContext,
    TaskIteration,
    utcnow,
)
from taskloop.plan import parse_plan
from taskloop.specialists.planner import PlannerAgent
from taskloop.specialists.verifier import CriteriaVerifier
from taskloop.steps import StepExecutor

logger = logging.getLogger(__name__)


class TaskEngine:
    """Drives one task through plan, execute, evaluate and decide iterations."""

    def __init__(
        self,
        planner: PlannerAgent,
        executor: StepExecutor,
        verifier: CriteriaVerifier,
        evaluator: QualityEvaluator | None = None,
        *,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.planner = planner
        self.executor = executor
        self.verifier = verifier
        self.evaluator = evaluator
        self.config = config or EngineConfig()
        self.events = events or EventBus()
        self._clock = clock

    def _should_evaluate(self, context: TaskContext) -> bool:
        return len(context.iterations) % 2 == 0 or context.progress > 80

    def _duration_exceeded(self, context: TaskContext) -> bool:
        if context.start_time is None:
            return False
        elapsed = self._clock() - context.start_time
        return elapsed >= timedelta(minutes=self.config.max_duration_minutes)

    def _fail(
        self,
        context: TaskContext,
        message: str,
        *,
        code: str,
        severity: ErrorSeverity = "high",
        error_type: ErrorType = "execution",
    ) -> None:
        now = self._clock()
        context.record_error(error_type, severity, message, code=code, at=now)
        transition(context, "failed", at=now)
        logger.error("Task %s failed: %s", context.task.id, message)
        self.events.emit(
            "task_failed", context.task.id, detail={"code": code, "message": message}
        )

    async def execute(self, context: TaskContext) -> TaskContext:
        """Run ``context`` until it reaches a terminal status."""
        if context.status != "pending":
            raise InvalidTransitionError(context.task.id, context.status, "planning")

        max_iterations = self.config.max_iterations
        policy = self.config.decision_policy()
        transition(context, "planning", at=self._clock())
        logger.info("Task %s started: %s", context.task.id, context.task.title)
        self.events.emit("task_started", context.task.id, detail={"title": context.task.title})

        while len(context.iterations) < max_iterations:
            if is_terminal(context.status):
                break
            iteration = await self._run_iteration(context, policy)
            if is_terminal(context.status):
                logger.info(
                    "Task %s became %s during iteration %d, discarding it",
                    context.task.id,
                    context.status,
                    iteration.index,
                )
                break

            context.iterations.append(iteration)
            context.metrics.iteration_count = len(context.iterations)
            self.events.emit(
                "iteration_completed",
                context.task.id,
                iteration=iteration.index,
                detail={
                    "decision": iteration.decision.decision if iteration.decision else None,
                    "steps": len(iteration.steps),
                    "failed_steps": iteration.failed_steps,
                },
            )

            if self._duration_exceeded(context):
                self._fail(
                    context,
                    (
                        f"Task exceeded its maximum duration of "
                        f"{self.config.max_duration_minutes} minutes"
                    ),
                    code=DurationExceededError.code,
                )
                break

            await self._apply_decision(context, iteration)
            if is_terminal(context.status):
                break
        else:
            if not is_terminal(context.status):
                self._fail(
                    context,
                    f"Task reached the maximum of {max_iterations} iterations without a decision",
                    code=MaxIterationsExceededError.code,
                )
        return context

    async def _run_iteration(self, context: TaskContext, policy: DecisionPolicy) -> TaskIteration:
        index = len(context.iterations) + 1
        iteration = TaskIteration(
            id=f"{context.task.id}-iter-{index}",
            index=index,
            start_time=self._clock(),
        )
        logger.info(
            "Task %s iteration %d/%d", context.task.id, index, self.config.max_iterations
        )
        self.events.emit("iteration_started", context.task.id, iteration=index)
        try:
            context.metrics.add_calls(1, self.config.cost_per_call)
            iteration.plan = await self.planner.plan(context)
            if is_terminal(context.status):
                return iteration
            steps = parse_plan(iteration.plan, prefix=f"{iteration.id}-step")

            transition(context, "executing", at=self._clock())
            await self.executor.execute(context, iteration, steps)
            if is_terminal(context.status):
                return iteration

            transition(context, "evaluating", at=self._clock())
            if self._should_evaluate(context):
                iteration.evaluation = await self._evaluate(context, iteration.index)
                if is_terminal(context.status):
                    return iteration

            acceptance = None
            if context.task.acceptance_criteria:
                acceptance = await self.verifier.verify(
                    context.task.acceptance_criteria, context.progress
                )
                context.metrics.add_calls(acceptance.calls, self.config.cost_per_call)
                if is_terminal(context.status):
                    return iteration

            iteration.decision = make_continuation_decision(context, iteration, acceptance, policy)
        except Exception as exc:
            if is_terminal(context.status):
                return iteration
            iteration.decision = ContinuationDecision(
                decision="abort",
                confidence=1.0,
                reasoning=f"Iteration failed: {exc}",
            )
            context.record_error(
                "system",
                "critical",
                f"Iteration {index} failed: {exc}",
                code="IterationFailed",
                details=type(exc).__name__,
                at=self._clock(),
            )
            logger.exception("Task %s iteration %d failed", context.task.id, index)
        finally:
            iteration.end_time = self._clock()
        return iteration

    async def _evaluate(self, context: TaskContext, index: int | None) -> EvaluationResult | None:
        if self.evaluator is None:
            return None
        try:
            result = await self.evaluator.evaluate()
        except EvaluationInProgressError as exc:
            context.record_error(
                "evaluation", "low", str(exc), code=exc.code, at=self._clock()
            )
            logger.info("Task %s evaluation skipped: %s", context.task.id, exc)
            self.events.emit(
                "evaluation_skipped", context.task.id, iteration=index, detail={"reason": str(exc)}
            )
            return None
        except Exception as exc:
            context.record_error(
                "evaluation",
                "medium",
                f"Evaluation failed: {exc}",
                code="EvaluationFailed",
                at=self._clock(),
            )
            logger.warning("Task %s evaluation failed: %s", context.task.id, exc)
            self.events.emit(
                "evaluation_skipped", context.task.id, iteration=index, detail={"reason": str(exc)}
            )
            return None

        if is_terminal(context.status):
            return None
        score = result.overall_score
        context.evaluation_results.append(result)
        context.progress = max(context.progress, max(0.0, min(100.0, float(score))))
        context.metrics.quality_score = score
        functionality = result.metrics.functionality
        tests = context.metrics.test_results
        tests.passed = max(tests.passed, functionality.tests_passed)
        tests.failed = max(tests.failed, functionality.tests_failed)
        tests.coverage = max(tests.coverage, result.metrics.code_quality.test_coverage)
        self.events.emit(
            "evaluation_completed",
            context.task.id,
            iteration=index,
            detail={"score": score, "grade": result.metrics.overall.grade},
        )
        return result

    async def _apply_decision(self, context: TaskContext, iteration: TaskIteration) -> None:
        decision = iteration.decision
        if decision is None:
            return
        logger.info(
            "Task %s iteration %d decision: %s (confidence %.2f) %s",
            context.task.id,
            iteration.index,
            decision.decision,
            decision.confidence,
            decision.reasoning,
        )

        if decision.decision == "complete":
            await self._complete(context, decision)
        elif decision.decision == "abort":
            self._fail(context, f"Task aborted: {decision.reasoning}", code="Aborted")
        elif decision.decision == "escalate":
            transition(context, "escalated", at=self._clock())
            logger.warning("Task %s escalated: %s", context.task.id, decision.reasoning)
            self.events.emit(
                "task_escalated",
                context.task.id,
                iteration=iteration.index,
                detail={"reasoning": decision.reasoning, "confidence": decision.confidence},
            )
        elif len(context.iterations) < self.config.max_iterations:
            transition(context, "planning", at=self._clock())

    async def _complete(self, context: TaskContext, decision: ContinuationDecision) -> None:
        if self.config.final_evaluation and self.evaluator is not None:
            await self._evaluate(context, None)
        if is_terminal(context.status):
            return
        latest = context.latest_evaluation
        if latest is not None:
            context.metrics.quality_score = latest.overall_score
        context.progress = 100.0
        transition(context, "completed", at=self._clock())
        logger.info("Task %s completed: %s", context.task.id, decision.reasoning)
        self.events.emit(
            "task_completed",
            context.task.id,
            detail={
                "reasoning": decision.reasoning,
                "quality_score": context.metrics.quality_score,
                "iterations": len(context.iterations),
            },
        )
