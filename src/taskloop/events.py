from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from taskloop.models import utcnow

logger = logging.getLogger(__name__)

EventKind = Literal[
    "task_queued",
    "task_started",
    "iteration_started",
    "iteration_completed",
    "step_started",
    "step_output",
    "step_completed",
    "step_failed",
    "evaluation_completed",
    "evaluation_skipped",
    "task_completed",
    "task_failed",
    "task_cancelled",
    "task_escalated",
]


@dataclass(slots=True, frozen=True)
class TaskEvent:
    kind: EventKind
    task_id: str
    at: datetime = field(default_factory=utcnow)
    iteration: int | None = None
    step_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


Listener = Callable[[TaskEvent], None]


class EventBus:
    """Synchronous fan-out of lifecycle events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, frozenset[str] | None]] = []
        self.history: list[TaskEvent] = []
        self.history_limit = 500

    def subscribe(
        self,
        listener: Listener,
        kinds: Iterable[EventKind] | None = None,
    ) -> Callable[[], None]:
        entry = (listener, frozenset(kinds) if kinds is not None else None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event: TaskEvent) -> None:
        self.history.append(event)
        if len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        for listener, kinds in list(self._listeners):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s on %s", event.kind, event.task_id)

    def emit(self, kind: EventKind, task_id: str, **kwargs: Any) -> TaskEvent:
        event = TaskEvent(kind=kind, task_id=task_id, **kwargs)
        self.publish(event)
        return event
