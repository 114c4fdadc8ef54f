from __future__ import annotations

import logging
from datetime import datetime

from taskloop.errors import InvalidTransitionError
from taskloop.models import TERMINAL_STATUSES, TaskContext, TaskStatus, utcnow

logger = logging.getLogger(__name__)

# cancelled is additionally reachable from every non-terminal status.
TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"planning", "failed"}),
    "planning": frozenset({"executing", "failed"}),
    "executing": frozenset({"evaluating", "failed"}),
    "evaluating": frozenset({"planning", "completed", "failed", "escalated"}),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    if is_terminal(current):
        return False
    if target == "cancelled":
        return True
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    context: TaskContext,
    target: TaskStatus,
    *,
    at: datetime | None = None,
) -> TaskContext:
    """Move ``context`` to ``target``, stamping start and end times.

    The start time is recorded on the first move into ``planning`` and the end
    time exactly once, when a terminal status is reached.
    """
    current = context.status
    if not can_transition(current, target):
        raise InvalidTransitionError(context.task.id, current, target)

    now = at or utcnow()
    if target == "planning" and context.start_time is None:
        context.start_time = now
    context.status = target
    if is_terminal(target) and context.end_time is None:
        context.end_time = now
        context.current_step = None
        if context.start_time is not None:
            elapsed = int((now - context.start_time).total_seconds() * 1000)
            context.metrics.total_duration_ms = max(context.metrics.total_duration_ms, elapsed)
    logger.debug("Task %s: %s -> %s", context.task.id, current, target)
    return context


def cancel(context: TaskContext, *, at: datetime | None = None) -> bool:
    """Cancel a non-terminal context. Returns False when it already finished."""
    if is_terminal(context.status):
        return False
    transition(context, "cancelled", at=at)
    return True
