from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from taskloop.decision import DecisionPolicy

BackendName = Literal["codex", "claude"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_CONFIG_FILE = "taskloop.toml"


@dataclass(slots=True)
class EngineConfig:
    max_iterations: int = 10
    max_duration_minutes: float = 120
    quality_threshold: float = 80
    stagnation_window: int = 3
    stagnation_spread: float = 5.0
    error_rate_threshold: float = 0.5
    remaining_iteration_budget: int = 5
    cost_per_call: float = 0.01
    final_evaluation: bool = True

    def decision_policy(self) -> DecisionPolicy:
        return DecisionPolicy(
            quality_threshold=self.quality_threshold,
            stagnation_window=self.stagnation_window,
            stagnation_spread=self.stagnation_spread,
            error_rate_threshold=self.error_rate_threshold,
            remaining_iteration_budget=self.remaining_iteration_budget,
        )


@dataclass(slots=True)
class AgentConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_turns: int = 1
    auto_approve: bool = True
    timeout_seconds: float = 60.0
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    claude_binary: str = "claude"
    codex_binary: str = "codex"


@dataclass(slots=True)
class EvaluatorConfig:
    lint_command: str = "ruff check --output-format json ."
    type_check_command: str = "python -m mypy ."
    test_command: str = "python -m pytest -q"
    min_coverage: float = 70
    max_complexity: float = 10
    code_quality_weight: float = 0.4
    functionality_weight: float = 0.4
    usability_weight: float = 0.2

    @property
    def weights(self) -> tuple[float, float, float]:
        return (self.code_quality_weight, self.functionality_weight, self.usability_weight)


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class TaskloopConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> TaskloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskloopConfig:
        return cls(
            engine=EngineConfig(**data.get("engine", {})),
            agent=AgentConfig(**data.get("agent", {})),
            evaluator=EvaluatorConfig(**data.get("evaluator", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("engine", "agent", "evaluator", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskloopConfig:
    if not path.exists():
        return TaskloopConfig.default()
    return TaskloopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
