from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

from taskloop.agent import AgentClient
from taskloop.events import EventBus
from taskloop.lifecycle import is_terminal
from taskloop.models import (
    Clock,
    ErrorSeverity,
    ExecutionStep,
    TaskContext,
    TaskIteration,
    utcnow,
)

logger = logging.getLogger(__name__)

OutputHandler = Callable[[ExecutionStep, str], None]
WorkspaceSnapshot = dict[str, tuple[str, int]]

SEVERITY_BY_CODE: dict[str, ErrorSeverity] = {
    "Timeout": "medium",
    "ProcessError": "medium",
    "NotFound": "high",
}


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


class GitWorkspaceProbe:
    """Observes working-tree changes through ``git status --porcelain``."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def snapshot(self) -> WorkspaceSnapshot:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "status", "--porcelain", "--untracked-files=all"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except (FileNotFoundError, NotADirectoryError):
            return {}
        if proc.returncode != 0:
            return {}
        entries: WorkspaceSnapshot = {}
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = _status_line_path(line)
            if not path:
                continue
            try:
                mtime = (self.repo_root / path).stat().st_mtime_ns
            except OSError:
                mtime = 0
            entries[path] = (line[:2], mtime)
        return entries

    @staticmethod
    def changed_paths(before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> list[str]:
        changed = {path for path, state in after.items() if before.get(path) != state}
        changed.update(path for path in before if path not in after)
        return sorted(changed)


class StepExecutor:
    """Runs planned steps in order, one agent call per step.

    Step failures are recorded on the step and in the task error log and never
    raised past this class.
    """

    def __init__(
        self,
        client: AgentClient,
        events: EventBus,
        *,
        probe: GitWorkspaceProbe | None = None,
        cost_per_call: float = 0.01,
        on_output: OutputHandler | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.client = client
        self.events = events
        self.probe = probe
        self.cost_per_call = cost_per_call
        self.on_output = on_output
        self._clock = clock

    def _build_prompt(self, context: TaskContext, step: ExecutionStep) -> str:
        return f"{step.description}\n\nTask: {context.task.title}"

    def _forward_output(
        self, context: TaskContext, iteration: TaskIteration, step: ExecutionStep
    ) -> Callable[[str], None]:
        def _handler(chunk: str) -> None:
            if self.on_output is not None:
                self.on_output(step, chunk)
            self.events.emit(
                "step_output",
                context.task.id,
                iteration=iteration.index,
                step_id=step.id,
                detail={"chunk": chunk},
            )

        return _handler

    async def run_step(
        self,
        context: TaskContext,
        iteration: TaskIteration,
        step: ExecutionStep,
        session_id: str | None = None,
    ) -> ExecutionStep:
        step.status = "running"
        step.start_time = self._clock()
        context.current_step = step.id
        logger.debug("Task %s step %s started: %s", context.task.id, step.id, step.description)
        self.events.emit(
            "step_started",
            context.task.id,
            iteration=iteration.index,
            step_id=step.id,
            detail={"type": step.type, "description": step.description},
        )
        before = self.probe.snapshot() if self.probe is not None else {}
        try:
            result = await self.client.invoke(
                self._build_prompt(context, step),
                session_id=session_id,
                on_chunk=self._forward_output(context, iteration, step),
            )
        except Exception as exc:
            code = str(getattr(exc, "code", "StepFailed"))
            step.status = "failed"
            step.output = str(exc)
            step.end_time = self._clock()
            context.record_error(
                "execution",
                SEVERITY_BY_CODE.get(code, "medium"),
                f"Step {step.id} failed: {exc}",
                code=code,
                details=step.description,
                recovery="The step is retried in a later iteration if the plan repeats it.",
                at=step.end_time,
            )
            logger.warning("Task %s step %s failed: %s", context.task.id, step.id, exc)
            self.events.emit(
                "step_failed",
                context.task.id,
                iteration=iteration.index,
                step_id=step.id,
                detail={"error": str(exc), "code": code},
            )
        else:
            step.output = result.content
            if self.probe is not None:
                step.artifacts = self.probe.changed_paths(before, self.probe.snapshot())
            step.status = "completed"
            step.end_time = self._clock()
            logger.debug("Task %s step %s completed", context.task.id, step.id)
            self.events.emit(
                "step_completed",
                context.task.id,
                iteration=iteration.index,
                step_id=step.id,
                detail={"duration_ms": result.duration_ms, "artifacts": list(step.artifacts)},
            )
        finally:
            context.metrics.add_calls(1, self.cost_per_call)
            self._update_change_counters(context, iteration)
        return step

    @staticmethod
    def _update_change_counters(context: TaskContext, iteration: TaskIteration) -> None:
        paths: set[str] = set()
        for past in [*context.iterations, iteration]:
            for step in past.steps:
                paths.update(step.artifacts)
        changes = context.metrics.code_changes
        changes.files_modified = max(changes.files_modified, len(paths))

    async def execute(
        self,
        context: TaskContext,
        iteration: TaskIteration,
        steps: Sequence[ExecutionStep],
    ) -> list[ExecutionStep]:
        session_id = self.client.ensure_session()
        for step in steps:
            if is_terminal(context.status):
                logger.info(
                    "Task %s reached %s, skipping remaining steps", context.task.id, context.status
                )
                break
            iteration.steps.append(step)
            await self.run_step(context, iteration, step, session_id=session_id)
        context.current_step = None
        return list(iteration.steps)
