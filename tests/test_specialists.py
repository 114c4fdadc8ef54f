import asyncio

import pytest

from taskloop.agent import AgentClient
from taskloop.backends import BackendTimeoutError, ScriptedBackend
from taskloop.errors import PlanningError
from taskloop.models import EvaluationResult, Task, TaskContext
from taskloop.specialists import CriteriaVerifier, PlannerAgent, parse_boolean_reply


def _context() -> TaskContext:
    task = Task(
        id="t1",
        title="Add login",
        description="Password login for the admin area",
        requirements=("bcrypt hashes", "rate limiting"),
        acceptance_criteria=("login works", "tests pass"),
    )
    return TaskContext(task=task, progress=42.4)


def test_planner_prompt_lists_task_state() -> None:
    context = _context()
    context.evaluation_results.append(
        EvaluationResult.from_score(55, suggestions=["Add docstrings"])
    )

    prompt = PlannerAgent.build_prompt(context)

    assert prompt.startswith("Task: Add login\n")
    assert "Description: Password login for the admin area" in prompt
    assert "Requirements: bcrypt hashes, rate limiting" in prompt
    assert "Progress: 42%" in prompt
    assert "Previous iterations: 0" in prompt
    assert "Open suggestions: Add docstrings" in prompt
    assert prompt.endswith("Generate a detailed execution plan for the next iteration.")


def test_planner_sends_system_prompt_and_returns_plan() -> None:
    backend = ScriptedBackend(default="- Build the form\n- Test it")
    planner = PlannerAgent(AgentClient(backend))

    plan = asyncio.run(planner.plan(_context()))

    assert plan == "- Build the form\n- Test it"
    assert planner.calls == 1
    assert "Planner specialist" in (backend.calls[0].options.system_prompt or "")


def test_planner_rejects_empty_output() -> None:
    planner = PlannerAgent(AgentClient(ScriptedBackend(default="   ")))

    with pytest.raises(PlanningError):
        asyncio.run(planner.plan(_context()))


@pytest.mark.parametrize(
    ("reply", "expected"),
    [
        ("true", True),
        ("True.", True),
        ('"TRUE"', True),
        ("yes", True),
        ("false", False),
        ("No, the file is missing", False),
        ("", None),
        ("maybe", None),
        ("not true", None),
        ("true or false, hard to say", None),
    ],
)
def test_parse_boolean_reply(reply: str, expected: bool | None) -> None:
    assert parse_boolean_reply(reply) is expected


def test_verifier_builds_yes_no_prompt() -> None:
    prompt = CriteriaVerifier.build_prompt("file exists", 40)

    assert prompt == (
        'Check if the following acceptance criteria is met: "file exists". '
        'Current progress: 40%. Respond with only "true" or "false".'
    )


def test_verifier_fails_closed_on_errors_and_ambiguity() -> None:
    backend = ScriptedBackend(
        routes=[
            ("login works", "true"),
            ("tests pass", BackendTimeoutError("slow", retriable=True)),
            ("docs updated", "I think so"),
        ]
    )
    verifier = CriteriaVerifier(AgentClient(backend))

    report = asyncio.run(
        verifier.verify(["login works", "tests pass", "docs updated"], progress=10)
    )

    assert report.met == {"login works": True, "tests pass": False, "docs updated": False}
    assert report.all_met is False
    assert report.confidence == pytest.approx(1 / 3)
    assert report.calls == 3


def test_verifier_all_met() -> None:
    verifier = CriteriaVerifier(AgentClient(ScriptedBackend(default="true")))

    report = asyncio.run(verifier.verify(["a", "b"], progress=0))

    assert report.all_met is True
    assert report.confidence == 1.0


def test_empty_criteria_never_count_as_met() -> None:
    verifier = CriteriaVerifier(AgentClient(ScriptedBackend(default="true")))

    report = asyncio.run(verifier.verify([], progress=0))

    assert report.all_met is False
    assert report.calls == 0
