from datetime import UTC, datetime, timedelta

import pytest

from taskloop.decision import (
    ACCEPTANCE_REASONING,
    CONTINUE_REASONING,
    STAGNATION_REASONING,
    DecisionPolicy,
    error_rate,
    estimate_remaining_minutes,
    is_stagnant,
    make_continuation_decision,
)
from taskloop.models import (
    ContinuationDecision,
    EvaluationResult,
    ExecutionStep,
    QualityIssue,
    Task,
    TaskContext,
    TaskIteration,
)
from taskloop.specialists.verifier import AcceptanceReport

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


def _step(step_id: str, description: str, status: str) -> ExecutionStep:
    return ExecutionStep(
        id=step_id,
        type="implementation",
        description=description,
        status=status,  # type: ignore[arg-type]
    )


def _iteration(
    index: int,
    *,
    score: float | None = None,
    failed: int = 0,
    succeeded: int = 1,
    minutes: float | None = 10,
) -> TaskIteration:
    steps = [_step(f"s{index}-{n}", f"ok {n}", "completed") for n in range(succeeded)]
    steps += [_step(f"s{index}-f{n}", f"broken {n}", "failed") for n in range(failed)]
    start = T0 + timedelta(hours=index)
    return TaskIteration(
        id=f"t-iter-{index}",
        index=index,
        start_time=start,
        end_time=start + timedelta(minutes=minutes) if minutes is not None else None,
        steps=steps,
        evaluation=EvaluationResult.from_score(score) if score is not None else None,
    )


def _context(*past: TaskIteration, criteria: tuple[str, ...] = ()) -> TaskContext:
    context = TaskContext(task=Task(id="t", title="Decide", acceptance_criteria=criteria))
    context.iterations.extend(past)
    return context


def test_all_criteria_met_completes_before_any_other_rule() -> None:
    # The quality threshold and an error-prone history would also fire here.
    past = [_iteration(1, score=70, failed=3, succeeded=0), _iteration(2, score=71, failed=3)]
    current = _iteration(3, score=95, failed=3, succeeded=0)
    acceptance = AcceptanceReport(met={"file exists": True}, calls=1)

    decision = make_continuation_decision(
        _context(*past, criteria=("file exists",)), current, acceptance, DecisionPolicy()
    )

    assert decision.decision == "complete"
    assert decision.confidence == 1.0
    assert decision.reasoning == ACCEPTANCE_REASONING


def test_quality_threshold_completes() -> None:
    decision = make_continuation_decision(
        _context(), _iteration(1, score=85), None, DecisionPolicy()
    )

    assert decision.decision == "complete"
    assert decision.confidence == 0.9
    assert decision.reasoning == "Quality threshold met (85%)"


def test_quality_threshold_only_counts_this_iterations_evaluation() -> None:
    past = [_iteration(1, score=95)]

    decision = make_continuation_decision(
        _context(*past), _iteration(2), None, DecisionPolicy()
    )

    assert decision.decision == "continue"


def test_partial_acceptance_does_not_complete() -> None:
    acceptance = AcceptanceReport(met={"a": True, "b": False}, calls=2)

    decision = make_continuation_decision(
        _context(criteria=("a", "b")), _iteration(1), acceptance, DecisionPolicy()
    )

    assert decision.decision == "continue"


def test_narrow_score_band_escalates() -> None:
    past = [_iteration(1, score=70), _iteration(2), _iteration(3, score=72), _iteration(4)]
    current = _iteration(5, score=68)

    decision = make_continuation_decision(_context(*past), current, None, DecisionPolicy())

    assert decision.decision == "escalate"
    assert decision.confidence == 0.8
    assert decision.reasoning == STAGNATION_REASONING


def test_stagnation_needs_a_full_window_of_evaluations() -> None:
    def scores(*values: float) -> list[TaskIteration]:
        return [_iteration(n, score=value) for n, value in enumerate(values, start=1)]

    assert is_stagnant(scores(70, 70), 3, 5.0) is False
    assert is_stagnant(scores(60, 70, 70), 3, 5.0) is False
    assert is_stagnant(scores(60, 70, 71, 74), 3, 5.0) is True
    assert is_stagnant([_iteration(1, score=70)], 0, 5.0) is False


def test_high_error_rate_aborts() -> None:
    past = [_iteration(1, failed=1, succeeded=1)]
    current = _iteration(2, failed=2, succeeded=0)

    decision = make_continuation_decision(_context(*past), current, None, DecisionPolicy())

    assert decision.decision == "abort"
    assert decision.confidence == 0.9
    assert decision.reasoning == "High error rate detected (75%)"


def test_error_rate_at_threshold_continues() -> None:
    current = _iteration(1, failed=1, succeeded=1)

    assert error_rate([current]) == 0.5
    decision = make_continuation_decision(_context(), current, None, DecisionPolicy())
    assert decision.decision == "continue"


def test_error_rate_without_steps_is_zero() -> None:
    assert error_rate([_iteration(1, succeeded=0)]) == 0.0


def test_continue_carries_next_actions_and_estimate() -> None:
    evaluation = EvaluationResult.from_score(
        55,
        issues=[
            QualityIssue(
                type="test",
                severity="critical",
                message="2 tests failing",
                suggestion="Fix failing tests",
            ),
            QualityIssue(type="lint", severity="low", message="Trailing whitespace"),
        ],
        suggestions=["Add docstrings", "Fix failing tests"],
    )
    current = _iteration(2, failed=1, succeeded=2, minutes=20)
    current.evaluation = evaluation
    past = [_iteration(1, minutes=10)]

    decision = make_continuation_decision(_context(*past), current, None, DecisionPolicy())

    assert decision.decision == "continue"
    assert decision.confidence == 0.7
    assert decision.reasoning == CONTINUE_REASONING
    assert decision.next_actions == (
        "Add docstrings",
        "Fix failing tests",
        "Retry failed step: broken 0",
    )
    # average 15 minutes over the remaining 3 of 5 budgeted iterations
    assert decision.estimated_remaining_minutes == 45.0


def test_remaining_estimate_falls_back_to_default_duration() -> None:
    policy = DecisionPolicy(remaining_iteration_budget=2, default_iteration_minutes=30)

    assert estimate_remaining_minutes([_iteration(1, minutes=None)], policy) == 30.0
    assert estimate_remaining_minutes(
        [_iteration(n, minutes=None) for n in range(1, 5)], policy
    ) == 30.0


def test_decision_is_always_one_of_four_values() -> None:
    for iteration in (
        _iteration(1),
        _iteration(1, score=10),
        _iteration(1, score=99),
        _iteration(1, failed=5, succeeded=0),
    ):
        decision = make_continuation_decision(_context(), iteration, None, DecisionPolicy())
        assert decision.decision in {"continue", "complete", "abort", "escalate"}
        assert 0.0 <= decision.confidence <= 1.0


def test_decision_rejects_out_of_range_values() -> None:
    with pytest.raises(ValueError):
        ContinuationDecision(decision="continue", confidence=1.5, reasoning="x")
    with pytest.raises(ValueError):
        ContinuationDecision(
            decision="retry",  # type: ignore[arg-type]
            confidence=0.5,
            reasoning="x",
        )
