from __future__ import annotations

import copy
import threading
from collections.abc import Iterator

from taskloop.errors import DuplicateTaskError, TaskNotFoundError
from taskloop.models import TaskContext, TaskStatus


class TaskRegistry:
    """Task id -> context map. Readers only ever receive deep copies."""

    def __init__(self) -> None:
        self._contexts: dict[str, TaskContext] = {}
        self._lock = threading.Lock()

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def add(self, context: TaskContext) -> None:
        with self._lock:
            if context.task.id in self._contexts:
                raise DuplicateTaskError(context.task.id)
            self._contexts[context.task.id] = context

    def get(self, task_id: str) -> TaskContext:
        """Return the live context. Reserved for the engine that owns it."""
        with self._lock:
            context = self._contexts.get(task_id)
        if context is None:
            raise TaskNotFoundError(task_id)
        return context

    def snapshot(self, task_id: str) -> TaskContext | None:
        with self._lock:
            context = self._contexts.get(task_id)
            if context is None:
                return None
            return copy.deepcopy(context)

    def require_snapshot(self, task_id: str) -> TaskContext:
        snapshot = self.snapshot(task_id)
        if snapshot is None:
            raise TaskNotFoundError(task_id)
        return snapshot

    def snapshots(self) -> list[TaskContext]:
        with self._lock:
            return [copy.deepcopy(context) for context in self._contexts.values()]

    def status_of(self, task_id: str) -> TaskStatus | None:
        with self._lock:
            context = self._contexts.get(task_id)
            return context.status if context is not None else None

    def ids(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._contexts))
