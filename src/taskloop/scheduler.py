from __future__ import annotations

import asyncio
import logging
from collections import deque

from taskloop.config import EngineConfig
from taskloop.engine import TaskEngine
from taskloop.errors import DependencyUnmetError, DuplicateTaskError
from taskloop.events import EventBus
from taskloop.lifecycle import cancel as cancel_context
from taskloop.lifecycle import is_terminal, transition
from taskloop.models import Task, TaskContext
from taskloop.registry import TaskRegistry

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"planning", "executing", "evaluating"})


class TaskScheduler:
    """FIFO task queue drained by a single worker, one task at a time.

    A task is admitted only when every dependency already completed. Task
    outcomes are reported through context status and events, never raised.
    """

    def __init__(
        self,
        engine: TaskEngine,
        *,
        registry: TaskRegistry | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry or TaskRegistry()
        self.events = events or engine.events
        self._queue: deque[str] = deque()
        self._current: str | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def current_task_id(self) -> str | None:
        return self._current

    def submit(self, task: Task) -> TaskContext:
        if task.id in self.registry:
            raise DuplicateTaskError(task.id)
        missing = [dep for dep in task.dependencies if self.registry.status_of(dep) != "completed"]
        if missing:
            logger.warning("Rejected task %s, unmet dependencies: %s", task.id, ", ".join(missing))
            raise DependencyUnmetError(task.id, missing)

        context = TaskContext(task=task)
        self.registry.add(context)
        self._queue.append(task.id)
        logger.info("Queued task %s (%d waiting)", task.id, len(self._queue))
        self.events.emit("task_queued", task.id, detail={"queue_length": len(self._queue)})
        self._ensure_draining()
        return self.registry.require_snapshot(task.id)

    def _ensure_draining(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        if not self._queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Draining starts from wait_idle() once an event loop is running.
            return
        self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            task_id = self._queue.popleft()
            context = self.registry.get(task_id)
            if context.status != "pending":
                logger.debug("Skipping task %s in status %s", task_id, context.status)
                continue
            self._current = task_id
            try:
                await self.engine.execute(context)
            except Exception as exc:
                logger.exception("Engine crashed while running task %s", task_id)
                if not is_terminal(context.status):
                    context.record_error(
                        "system", "critical", f"Engine failure: {exc}", code="EngineFailure"
                    )
                    transition(context, "failed")
                    self.events.emit(
                        "task_failed",
                        task_id,
                        detail={"code": "EngineFailure", "message": str(exc)},
                    )
            finally:
                self._current = None
            logger.info("Task %s finished with status %s", task_id, context.status)
        logger.info("Task queue drained")

    async def wait_idle(self) -> None:
        """Wait until every queued task reached a terminal status."""
        while True:
            self._ensure_draining()
            drain_task = self._drain_task
            if drain_task is None or drain_task.done():
                if not self._queue:
                    return
                continue
            await drain_task

    def status(self, task_id: str) -> TaskContext | None:
        return self.registry.snapshot(task_id)

    def tasks(self) -> list[TaskContext]:
        return self.registry.snapshots()

    def cancel(self, task_id: str) -> None:
        context = self.registry.get(task_id)
        if not cancel_context(context):
            logger.debug("Task %s already finished, nothing to cancel", task_id)
            return
        if task_id in self._queue:
            self._queue.remove(task_id)
        logger.info("Cancelled task %s", task_id)
        self.events.emit("task_cancelled", task_id)

    def queue_length(self) -> int:
        return len(self._queue)

    def active_task_ids(self) -> list[str]:
        return [
            task_id
            for task_id in self.registry.ids()
            if self.registry.status_of(task_id) in ACTIVE_STATUSES
        ]

    def update_config(self, config: EngineConfig) -> None:
        self.engine.config = config
