from __future__ import annotations

from dataclasses import dataclass

from taskloop.models import ContinuationDecision, TaskContext, TaskIteration
from taskloop.specialists.verifier import AcceptanceReport

ACCEPTANCE_REASONING = "All acceptance criteria have been met"
STAGNATION_REASONING = "Progress has stagnated, human intervention may be needed"
CONTINUE_REASONING = "Task is progressing, continuing with next iteration"


@dataclass(slots=True)
class DecisionPolicy:
    quality_threshold: float = 80
    stagnation_window: int = 3
    stagnation_spread: float = 5.0
    error_rate_threshold: float = 0.5
    remaining_iteration_budget: int = 5
    default_iteration_minutes: float = 30.0


def _history(context: TaskContext, iteration: TaskIteration) -> list[TaskIteration]:
    if any(past is iteration for past in context.iterations):
        return list(context.iterations)
    return [*context.iterations, iteration]


def error_rate(iterations: list[TaskIteration]) -> float:
    total = sum(len(item.steps) for item in iterations)
    if total == 0:
        return 0.0
    failed = sum(item.failed_steps for item in iterations)
    return failed / total


def is_stagnant(iterations: list[TaskIteration], window: int, spread: float) -> bool:
    scores = [item.evaluation.overall_score for item in iterations if item.evaluation is not None]
    if window <= 0 or len(scores) < window:
        return False
    recent = scores[-window:]
    return max(recent) - min(recent) < spread


def estimate_remaining_minutes(iterations: list[TaskIteration], policy: DecisionPolicy) -> float:
    durations = [
        (item.end_time - item.start_time).total_seconds() / 60
        for item in iterations
        if item.end_time is not None
    ]
    average = sum(durations) / len(durations) if durations else policy.default_iteration_minutes
    remaining = max(1, policy.remaining_iteration_budget - len(iterations))
    return round(average * remaining, 2)


def suggest_next_actions(context: TaskContext, iteration: TaskIteration) -> list[str]:
    actions: list[str] = []
    evaluation = iteration.evaluation or context.latest_evaluation
    if evaluation is not None:
        actions.extend(item.message for item in evaluation.suggestions)
        actions.extend(
            issue.suggestion or issue.message
            for issue in evaluation.issues
            if issue.severity in {"high", "critical"}
        )
    actions.extend(
        f"Retry failed step: {step.description}"
        for step in iteration.steps
        if step.status == "failed"
    )
    deduplicated = list(dict.fromkeys(actions))
    return deduplicated[:5]


def make_continuation_decision(
    context: TaskContext,
    iteration: TaskIteration,
    acceptance: AcceptanceReport | None,
    policy: DecisionPolicy,
) -> ContinuationDecision:
    """Decide what follows ``iteration``. The first matching rule wins.

    1. every acceptance criterion verified -> complete
    2. this iteration's evaluation reaches the quality threshold -> complete
    3. the last evaluated scores stay within a narrow band -> escalate
    4. more than the tolerated share of steps failed -> abort
    5. otherwise -> continue
    """
    history = _history(context, iteration)

    if acceptance is not None and acceptance.all_met:
        return ContinuationDecision(
            decision="complete",
            confidence=acceptance.confidence,
            reasoning=ACCEPTANCE_REASONING,
        )

    if iteration.evaluation is not None:
        score = iteration.evaluation.overall_score
        if score >= policy.quality_threshold:
            return ContinuationDecision(
                decision="complete",
                confidence=0.9,
                reasoning=f"Quality threshold met ({score:.0f}%)",
            )

    if is_stagnant(history, policy.stagnation_window, policy.stagnation_spread):
        return ContinuationDecision(
            decision="escalate",
            confidence=0.8,
            reasoning=STAGNATION_REASONING,
        )

    rate = error_rate(history)
    if rate > policy.error_rate_threshold:
        return ContinuationDecision(
            decision="abort",
            confidence=0.9,
            reasoning=f"High error rate detected ({round(rate * 100)}%)",
        )

    return ContinuationDecision(
        decision="continue",
        confidence=0.7,
        reasoning=CONTINUE_REASONING,
        next_actions=tuple(suggest_next_actions(context, iteration)),
        estimated_remaining_minutes=estimate_remaining_minutes(history, policy),
    )
