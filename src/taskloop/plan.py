from __future__ import annotations

import re

from taskloop.errors import PlanningError
from taskloop.models import ExecutionStep, StepType

BULLET_PATTERN = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")


def infer_step_type(description: str) -> StepType:
    lowered = description.lower()
    if "test" in lowered:
        return "testing"
    if "doc" in lowered:
        return "documentation"
    if "analyz" in lowered:
        return "analysis"
    return "implementation"


def _strip_bullet(line: str) -> str:
    match = BULLET_PATTERN.match(line)
    if match:
        return match.group(1).strip()
    return line


def parse_plan(plan: str, *, prefix: str = "step") -> list[ExecutionStep]:
    """Split plan text into ordered steps, one per non-blank line."""
    steps: list[ExecutionStep] = []
    for raw_line in plan.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        description = _strip_bullet(line)
        steps.append(
            ExecutionStep(
                id=f"{prefix}-{len(steps) + 1}",
                type=infer_step_type(description),
                description=description,
            )
        )
    if not steps:
        raise PlanningError("No plan produced: planner output contained no steps.")
    return steps
