from __future__ import annotations

import ast
import asyncio
import json
import logging
import re
import shlex
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskloop.errors import EvaluationInProgressError
from taskloop.models import (
    Clock,
    CodeQualityMetrics,
    EvaluationResult,
    FunctionalityMetrics,
    OverallMetrics,
    QualityIssue,
    QualityMetrics,
    QualitySuggestion,
    UsabilityMetrics,
    grade_for,
    recommendation_for,
    utcnow,
)

logger = logging.getLogger(__name__)

COVERAGE_PATTERN = re.compile(r"(?<![\[\d])(\d{1,3})%(?!\])")
TOTAL_COVERAGE_PATTERN = re.compile(r"^TOTAL\b.*?\b(\d{1,3})%\s*$", re.MULTILINE)
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
LINT_LOCATION_PATTERN = re.compile(r"^\S+?:\d+:\d+:", re.MULTILINE)
TYPE_ERROR_PATTERN = re.compile(r":\s*error\b", re.IGNORECASE)
PYTEST_COUNT_PATTERN = re.compile(r"(\d+)\s+(passed|failed|errors?)\b")
SKIPPED_DIRECTORIES = {"__pycache__", "node_modules", "venv", "build", "dist"}
API_DESIGN_SCORE = 85.0
PERFORMANCE_SCORE = 80.0


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"

    @property
    def missing(self) -> bool:
        return self.exit_code == 127


@dataclass(slots=True)
class SourceStats:
    files: int = 0
    files_with_error_handling: int = 0
    definitions: int = 0
    documented: int = 0
    functions: int = 0
    branches: int = 0

    @property
    def average_complexity(self) -> float:
        if self.functions == 0:
            return 0.0
        return round(1 + self.branches / self.functions, 1)

    @property
    def error_handling_score(self) -> float:
        if self.files == 0:
            return 0.0
        return round(self.files_with_error_handling / self.files * 100)

    @property
    def documentation_score(self) -> float:
        if self.definitions == 0:
            return 0.0
        return round(self.documented / self.definitions * 100)


class QualityEvaluator(ABC):
    """Returns a structured assessment of the current workspace."""

    @abstractmethod
    async def evaluate(self) -> EvaluationResult:
        """Score the workspace. Raises EvaluationInProgressError on overlap."""


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def _branch_count(node: ast.AST) -> int:
    count = 0
    for child in ast.walk(node):
        if isinstance(child, (ast.If, ast.IfExp, ast.For, ast.AsyncFor, ast.While)):
            count += 1
        elif isinstance(child, (ast.ExceptHandler, ast.comprehension)):
            count += 1
        elif isinstance(child, ast.BoolOp):
            count += len(child.values) - 1
        elif isinstance(child, ast.match_case):
            count += 1
    return count


def collect_source_stats(root: Path) -> SourceStats:
    stats = SourceStats()
    for path in _iter_python_files(root):
        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        except (OSError, SyntaxError, UnicodeDecodeError, ValueError):
            continue
        stats.files += 1
        if any(isinstance(node, (ast.Try, ast.Raise)) for node in ast.walk(tree)):
            stats.files_with_error_handling += 1
        for node in ast.walk(tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                stats.definitions += 1
                if ast.get_docstring(node):
                    stats.documented += 1
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                stats.functions += 1
                stats.branches += _branch_count(node)
    return stats


def _iter_python_files(root: Path) -> Iterator[Path]:
    for path in sorted(root.rglob("*.py")):
        relative = path.relative_to(root).parts[:-1]
        if any(part.startswith(".") or part in SKIPPED_DIRECTORIES for part in relative):
            continue
        yield path


def count_lint_errors(result: CommandResult | None) -> int:
    if result is None or result.missing or result.exit_code == 0:
        return 0
    stdout = result.stdout.strip()
    if stdout.startswith("["):
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, list):
            return len(payload)
    located = len(LINT_LOCATION_PATTERN.findall(result.output))
    return located if located else 1


def count_type_errors(result: CommandResult | None) -> int:
    if result is None or result.missing or result.exit_code == 0:
        return 0
    errors = [
        line
        for line in result.output.splitlines()
        if TYPE_ERROR_PATTERN.search(line) and not line.startswith("Found ")
    ]
    return len(errors) if errors else 1


def parse_test_counts(result: CommandResult | None) -> tuple[int, int]:
    """Return (passed, failed) from pytest- or jest-style output."""
    if result is None or result.missing:
        return 0, 0
    for line in reversed(result.stdout.splitlines()):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "numTotalTests" in payload:
            passed = int(payload.get("numPassedTests", 0))
            return passed, int(payload["numTotalTests"]) - passed
    passed = failed = 0
    for count, label in PYTEST_COUNT_PATTERN.findall(result.output):
        if label == "passed":
            passed = int(count)
        else:
            failed += int(count)
    return passed, failed


def parse_coverage(result: CommandResult | None) -> float | None:
    if result is None or result.missing:
        return None
    output = result.output
    total = TOTAL_COVERAGE_PATTERN.findall(output)
    if total:
        return _clamp(float(total[-1]))
    matches = COVERAGE_PATTERN.findall(output)
    if not matches:
        return None
    return _clamp(float(max(int(item) for item in matches)))


class CommandQualityEvaluator(QualityEvaluator):
    """Scores a project by running its lint, type-check and test commands."""

    def __init__(
        self,
        project_root: Path,
        *,
        lint_command: str = "",
        type_check_command: str = "",
        test_command: str = "",
        min_coverage: float = 70,
        max_complexity: float = 10,
        weights: tuple[float, float, float] = (0.4, 0.4, 0.2),
        clock: Clock = utcnow,
    ) -> None:
        self.project_root = project_root
        self.lint_command = lint_command
        self.type_check_command = type_check_command
        self.test_command = test_command
        self.min_coverage = min_coverage
        self.max_complexity = max_complexity
        self.weights = weights
        self._clock = clock
        self._evaluating = False

    @property
    def is_evaluating(self) -> bool:
        return self._evaluating

    async def _run_command(self, command: str) -> CommandResult | None:
        command_text = command.strip()
        if not command_text:
            return None

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not used_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                used_shell = True

        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    command_text,
                    cwd=self.project_root,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=self.project_root,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except FileNotFoundError:
            logger.warning("Evaluator command not found: %s", command_text)
            return CommandResult(command_text, 127, "", f"command not found: {command_text}")

        stdout, stderr = await process.communicate()
        return CommandResult(
            command=command_text,
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace").strip()[-20000:],
            stderr=stderr.decode("utf-8", errors="replace").strip()[-20000:],
        )

    async def evaluate(self) -> EvaluationResult:
        if self._evaluating:
            raise EvaluationInProgressError()
        self._evaluating = True
        try:
            lint, type_check, tests = await asyncio.gather(
                self._run_command(self.lint_command),
                self._run_command(self.type_check_command),
                self._run_command(self.test_command),
            )
            stats = await asyncio.to_thread(collect_source_stats, self.project_root)
            return self.score(lint, type_check, tests, stats)
        finally:
            self._evaluating = False

    def score(
        self,
        lint: CommandResult | None,
        type_check: CommandResult | None,
        tests: CommandResult | None,
        stats: SourceStats,
    ) -> EvaluationResult:
        lint_errors = count_lint_errors(lint)
        type_errors = count_type_errors(type_check)
        coverage = parse_coverage(tests) or 0.0
        complexity = stats.average_complexity

        lint_score = _clamp(100 - lint_errors * 5)
        type_score = _clamp(100 - type_errors * 10)
        complexity_score = _clamp(100 - max(0.0, complexity - self.max_complexity) * 10)
        code_quality = CodeQualityMetrics(
            lint_errors=lint_errors,
            type_errors=type_errors,
            test_coverage=coverage,
            complexity=complexity,
            score=round((lint_score + type_score + coverage + complexity_score) / 4),
        )

        passed, failed = parse_test_counts(tests)
        total = passed + failed
        functionality = FunctionalityMetrics(
            tests_passed=passed,
            tests_failed=failed,
            tests_total=total,
            score=round(passed / total * 100) if total else 0,
        )

        usability = UsabilityMetrics(
            error_handling=stats.error_handling_score,
            documentation=stats.documentation_score,
            api_design=API_DESIGN_SCORE,
            performance=PERFORMANCE_SCORE,
        )
        usability.score = round(
            (
                usability.error_handling
                + usability.documentation
                + usability.api_design
                + usability.performance
            )
            / 4
        )

        code_weight, functionality_weight, usability_weight = self.weights
        weight_total = code_weight + functionality_weight + usability_weight or 1.0
        overall_score = round(
            (
                code_quality.score * code_weight
                + functionality.score * functionality_weight
                + usability.score * usability_weight
            )
            / weight_total
        )
        metrics = QualityMetrics(
            code_quality=code_quality,
            functionality=functionality,
            usability=usability,
            overall=OverallMetrics(
                score=overall_score,
                grade=grade_for(overall_score),
                recommendation=recommendation_for(overall_score),
            ),
        )
        return EvaluationResult(
            timestamp=self._clock(),
            metrics=metrics,
            issues=self._identify_issues(metrics),
            suggestions=self._generate_suggestions(metrics),
        )

    def _identify_issues(self, metrics: QualityMetrics) -> list[QualityIssue]:
        issues: list[QualityIssue] = []
        code = metrics.code_quality
        if code.lint_errors > 0:
            issues.append(
                QualityIssue(
                    type="lint",
                    severity="high",
                    message=f"{code.lint_errors} lint errors found",
                    suggestion="Run the linter with autofix enabled",
                )
            )
        if code.type_errors > 0:
            issues.append(
                QualityIssue(
                    type="types",
                    severity="high",
                    message=f"{code.type_errors} type errors found",
                )
            )
        if code.test_coverage < self.min_coverage:
            issues.append(
                QualityIssue(
                    type="coverage",
                    severity="high",
                    message=(
                        f"Test coverage {code.test_coverage:.0f}% is below threshold "
                        f"{self.min_coverage:.0f}%"
                    ),
                    suggestion="Add more unit tests to increase coverage",
                )
            )
        if metrics.functionality.tests_failed > 0:
            issues.append(
                QualityIssue(
                    type="tests",
                    severity="critical",
                    message=f"{metrics.functionality.tests_failed} tests are failing",
                )
            )
        return issues

    def _generate_suggestions(self, metrics: QualityMetrics) -> list[QualitySuggestion]:
        suggestions: list[QualitySuggestion] = []
        if metrics.code_quality.score < 80:
            suggestions.append(
                QualitySuggestion(
                    category="refactoring",
                    message="Focus on reducing lint errors and improving type safety",
                    priority="high",
                )
            )
        if metrics.usability.documentation < 70:
            suggestions.append(
                QualitySuggestion(
                    category="documentation",
                    message="Add docstrings to public APIs and create usage examples",
                    priority="medium",
                )
            )
        if metrics.code_quality.test_coverage < self.min_coverage:
            suggestions.append(
                QualitySuggestion(
                    category="testing",
                    message="Add tests for uncovered code paths",
                    priority="medium",
                )
            )
        return suggestions


ScriptedScore = float | EvaluationResult | Exception


class StaticQualityEvaluator(QualityEvaluator):
    """Replays a fixed sequence of scores, repeating the last one."""

    def __init__(
        self,
        scores: Sequence[ScriptedScore] = (50.0,),
        *,
        delay_seconds: float = 0.0,
        clock: Clock = utcnow,
    ) -> None:
        if not scores:
            raise ValueError("StaticQualityEvaluator needs at least one score.")
        self._scores: list[Any] = list(scores)
        self.delay_seconds = delay_seconds
        self._clock = clock
        self._evaluating = False
        self.calls = 0

    async def evaluate(self) -> EvaluationResult:
        if self._evaluating:
            raise EvaluationInProgressError()
        self._evaluating = True
        try:
            self.calls += 1
            if self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)
            item = self._scores.pop(0) if len(self._scores) > 1 else self._scores[0]
            if isinstance(item, Exception):
                raise item
            if isinstance(item, EvaluationResult):
                return item
            return EvaluationResult.from_score(float(item), timestamp=self._clock())
        finally:
            self._evaluating = False
