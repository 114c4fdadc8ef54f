from __future__ import annotations


class TaskloopError(RuntimeError):
    """Base class for engine, scheduler and collaborator errors."""

    code: str = "TaskloopError"


class DependencyUnmetError(TaskloopError):
    code = "DependencyUnmet"

    def __init__(self, task_id: str, missing: list[str]) -> None:
        super().__init__(
            f"Task {task_id} has unmet dependencies: {', '.join(missing)}"
        )
        self.task_id = task_id
        self.missing = list(missing)


class TaskNotFoundError(TaskloopError):
    code = "TaskNotFound"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown task: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(TaskloopError):
    code = "DuplicateTask"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already submitted: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(TaskloopError):
    code = "InvalidTransition"

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class MaxIterationsExceededError(TaskloopError):
    code = "MaxIterationsExceeded"


class DurationExceededError(TaskloopError):
    code = "DurationExceeded"


class EvaluationInProgressError(TaskloopError):
    code = "AlreadyRunning"

    def __init__(self, message: str = "Evaluation already in progress") -> None:
        super().__init__(message)


class PlanningError(TaskloopError):
    code = "PlanningFailed"


class SessionNotFoundError(TaskloopError):
    code = "SessionNotFound"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown agent session: {session_id}")
        self.session_id = session_id
