from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, get_args

TaskStatus = Literal[
    "pending",
    "planning",
    "executing",
    "evaluating",
    "completed",
    "failed",
    "cancelled",
    "escalated",
]
TaskPriority = Literal["low", "medium", "high", "critical"]
StepType = Literal["analysis", "implementation", "testing", "documentation"]
StepStatus = Literal["pending", "running", "completed", "failed"]
DecisionValue = Literal["continue", "complete", "abort", "escalate"]
ErrorType = Literal["execution", "evaluation", "system"]
ErrorSeverity = Literal["low", "medium", "high", "critical"]
Grade = Literal["A", "B", "C", "D", "F"]

Clock = Callable[[], datetime]

TASK_PRIORITIES: tuple[str, ...] = get_args(TaskPriority)
DECISION_VALUES: tuple[str, ...] = get_args(DecisionValue)
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "escalated"})


def utcnow() -> datetime:
    return datetime.now(UTC)


def grade_for(score: float) -> Grade:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def recommendation_for(score: float) -> str:
    if score >= 90:
        return "Excellent quality! Consider minor optimizations for peak performance."
    if score >= 80:
        return "Good quality. Focus on addressing remaining issues."
    if score >= 70:
        return "Acceptable quality. Significant improvements needed in key areas."
    if score >= 60:
        return "Below average quality. Major refactoring recommended."
    return "Poor quality. Comprehensive review and restructuring required."


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _str_tuple(values: Iterable[Any] | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(item) for item in values)


@dataclass(slots=True, frozen=True)
class Task:
    """A unit of requested work. Immutable once admitted."""

    id: str
    title: str
    description: str = ""
    requirements: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    priority: TaskPriority = "medium"
    estimated_duration_minutes: int = 60
    dependencies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        if not str(self.id).strip():
            raise ValueError("Task id must not be empty.")
        if self.priority not in TASK_PRIORITIES:
            raise ValueError(
                f"Unknown task priority {self.priority!r}; expected one of {TASK_PRIORITIES}"
            )
        object.__setattr__(self, "requirements", _str_tuple(self.requirements))
        object.__setattr__(self, "acceptance_criteria", _str_tuple(self.acceptance_criteria))
        object.__setattr__(self, "dependencies", _str_tuple(self.dependencies))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        if "id" not in data or "title" not in data:
            raise ValueError("Task entries require 'id' and 'title'.")
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            description=str(data.get("description", "")),
            requirements=_str_tuple(data.get("requirements")),
            acceptance_criteria=_str_tuple(data.get("acceptance_criteria")),
            priority=data.get("priority", "medium"),
            estimated_duration_minutes=int(data.get("estimated_duration_minutes", 60)),
            dependencies=_str_tuple(data.get("dependencies")),
            metadata=dict(data.get("metadata", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(slots=True)
class ExecutionStep:
    id: str
    type: StepType
    description: str
    status: StepStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    output: str = ""
    artifacts: list[str] = field(default_factory=list)

    @property
    def duration_ms(self) -> int | None:
        if self.start_time is None or self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


@dataclass(slots=True, frozen=True)
class ContinuationDecision:
    decision: DecisionValue
    confidence: float
    reasoning: str
    next_actions: tuple[str, ...] = ()
    estimated_remaining_minutes: float | None = None

    def __post_init__(self) -> None:
        if self.decision not in DECISION_VALUES:
            raise ValueError(f"Unknown decision {self.decision!r}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Decision confidence out of range: {self.confidence}")
        object.__setattr__(self, "next_actions", _str_tuple(self.next_actions))


@dataclass(slots=True)
class CodeQualityMetrics:
    lint_errors: int = 0
    type_errors: int = 0
    test_coverage: float = 0.0
    complexity: float = 0.0
    score: float = 0.0


@dataclass(slots=True)
class FunctionalityMetrics:
    tests_passed: int = 0
    tests_failed: int = 0
    tests_total: int = 0
    score: float = 0.0


@dataclass(slots=True)
class UsabilityMetrics:
    error_handling: float = 0.0
    documentation: float = 0.0
    api_design: float = 0.0
    performance: float = 0.0
    score: float = 0.0


@dataclass(slots=True)
class OverallMetrics:
    score: float
    grade: Grade
    recommendation: str


@dataclass(slots=True)
class QualityMetrics:
    code_quality: CodeQualityMetrics
    functionality: FunctionalityMetrics
    usability: UsabilityMetrics
    overall: OverallMetrics


@dataclass(slots=True)
class QualityIssue:
    type: str
    severity: ErrorSeverity
    message: str
    file: str | None = None
    suggestion: str | None = None


@dataclass(slots=True)
class QualitySuggestion:
    category: str
    message: str
    priority: TaskPriority = "medium"


@dataclass(slots=True)
class EvaluationResult:
    timestamp: datetime
    metrics: QualityMetrics
    issues: list[QualityIssue] = field(default_factory=list)
    suggestions: list[QualitySuggestion] = field(default_factory=list)

    @property
    def overall_score(self) -> float:
        return self.metrics.overall.score

    @classmethod
    def from_score(
        cls,
        score: float,
        *,
        issues: Iterable[QualityIssue] = (),
        suggestions: Iterable[QualitySuggestion | str] = (),
        timestamp: datetime | None = None,
    ) -> EvaluationResult:
        """Build a result whose sub-scores all equal ``score``."""
        normalized = [
            item
            if isinstance(item, QualitySuggestion)
            else QualitySuggestion(category="general", message=str(item))
            for item in suggestions
        ]
        return cls(
            timestamp=timestamp or utcnow(),
            metrics=QualityMetrics(
                code_quality=CodeQualityMetrics(score=score),
                functionality=FunctionalityMetrics(score=score),
                usability=UsabilityMetrics(score=score),
                overall=OverallMetrics(
                    score=score,
                    grade=grade_for(score),
                    recommendation=recommendation_for(score),
                ),
            ),
            issues=list(issues),
            suggestions=normalized,
        )


@dataclass(slots=True)
class TaskIteration:
    id: str
    index: int
    start_time: datetime
    end_time: datetime | None = None
    plan: str = ""
    steps: list[ExecutionStep] = field(default_factory=list)
    evaluation: EvaluationResult | None = None
    decision: ContinuationDecision | None = None

    @property
    def failed_steps(self) -> int:
        return sum(1 for step in self.steps if step.status == "failed")


@dataclass(slots=True)
class TaskError:
    timestamp: datetime
    type: ErrorType
    severity: ErrorSeverity
    message: str
    code: str | None = None
    details: str | None = None
    recovery: str | None = None


@dataclass(slots=True)
class CodeChanges:
    files_modified: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(slots=True)
class TestResults:
    __test__ = False

    passed: int = 0
    failed: int = 0
    coverage: float = 0.0


@dataclass(slots=True)
class CostEstimate:
    api_calls: int = 0
    estimated_cost: float = 0.0


@dataclass(slots=True)
class TaskMetrics:
    iteration_count: int = 0
    quality_score: float | None = None
    code_changes: CodeChanges = field(default_factory=CodeChanges)
    test_results: TestResults = field(default_factory=TestResults)
    cost: CostEstimate = field(default_factory=CostEstimate)
    total_duration_ms: int = 0

    def add_calls(self, count: int, unit_cost: float) -> None:
        if count <= 0:
            return
        self.cost.api_calls += count
        self.cost.estimated_cost = round(self.cost.api_calls * unit_cost, 6)


@dataclass(slots=True)
class TaskContext:
    """Mutable execution record for one task, owned by the engine running it."""

    task: Task
    status: TaskStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    current_step: str | None = None
    progress: float = 0.0
    iterations: list[TaskIteration] = field(default_factory=list)
    evaluation_results: list[EvaluationResult] = field(default_factory=list)
    errors: list[TaskError] = field(default_factory=list)
    metrics: TaskMetrics = field(default_factory=TaskMetrics)

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def latest_evaluation(self) -> EvaluationResult | None:
        if not self.evaluation_results:
            return None
        return self.evaluation_results[-1]

    def record_error(
        self,
        type: ErrorType,
        severity: ErrorSeverity,
        message: str,
        *,
        code: str | None = None,
        details: str | None = None,
        recovery: str | None = None,
        at: datetime | None = None,
    ) -> TaskError:
        error = TaskError(
            timestamp=at or utcnow(),
            type=type,
            severity=severity,
            message=message,
            code=code,
            details=details,
            recovery=recovery,
        )
        self.errors.append(error)
        return error

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))
