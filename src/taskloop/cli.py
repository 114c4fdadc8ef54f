from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskloop import __version__
from taskloop.agent import AgentClient
from taskloop.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    InvokeOptions,
    ResilientBackend,
    RetryPolicy,
)
from taskloop.config import (
    DEFAULT_CONFIG_FILE,
    BackendName,
    TaskloopConfig,
    dumps_toml,
    load_config,
    save_config,
)
from taskloop.engine import TaskEngine
from taskloop.errors import TaskloopError
from taskloop.evaluator import CommandQualityEvaluator
from taskloop.events import EventBus, TaskEvent
from taskloop.log import configure_logging
from taskloop.models import Task, TaskContext
from taskloop.scheduler import TaskScheduler
from taskloop.specialists import CriteriaVerifier, PlannerAgent
from taskloop.steps import GitWorkspaceProbe, StepExecutor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskloopConfig
    events: EventBus
    scheduler: TaskScheduler


@dataclass(slots=True)
class Rejection:
    task_id: str
    reason: str


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _read_config(config_path: Path) -> TaskloopConfig:
    try:
        return load_config(config_path)
    except (TypeError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event: %s", json.dumps(event, ensure_ascii=False, default=str))


def _log_task_event(event: TaskEvent) -> None:
    if event.kind == "step_output":
        return
    logger.debug("%s %s %s", event.kind, event.task_id, event.detail or "")


def _build_single_backend(
    backend_name: BackendName, config: TaskloopConfig, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(
            binary=config.agent.codex_binary,
            working_directory=repo_root,
            event_hook=_log_backend_event,
        )
    return ClaudeCodeBackend(
        binary=config.agent.claude_binary,
        working_directory=repo_root,
        event_hook=_log_backend_event,
    )


def _build_backend(config: TaskloopConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.agent.max_retries)),
        backoff_seconds=max(0.0, float(config.agent.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.agent.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.agent.primary,
        primary_backend=_build_single_backend(config.agent.primary, config, repo_root),
        fallback_name=config.agent.fallback,
        fallback_backend=_build_single_backend(config.agent.fallback, config, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _build_client(backend: AgentBackend, config: TaskloopConfig, repo_root: Path) -> AgentClient:
    timeout = config.agent.timeout_seconds
    if isinstance(backend, ResilientBackend):
        # The resilient backend times each attempt itself.
        timeout = backend.total_timeout()
    return AgentClient(
        backend,
        InvokeOptions(
            max_turns=config.agent.max_turns,
            auto_approve=config.agent.auto_approve,
            timeout_seconds=timeout,
        ),
        working_directory=repo_root,
    )


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    config: TaskloopConfig,
    *,
    evaluate: bool = True,
) -> Runtime:
    events = EventBus()
    events.subscribe(_log_task_event)
    client = _build_client(_build_backend(config, repo_root), config, repo_root)
    evaluator = None
    if evaluate:
        evaluator = CommandQualityEvaluator(
            repo_root,
            lint_command=config.evaluator.lint_command,
            type_check_command=config.evaluator.type_check_command,
            test_command=config.evaluator.test_command,
            min_coverage=config.evaluator.min_coverage,
            max_complexity=config.evaluator.max_complexity,
            weights=config.evaluator.weights,
        )
    engine = TaskEngine(
        planner=PlannerAgent(client),
        executor=StepExecutor(
            client,
            events,
            probe=GitWorkspaceProbe(repo_root),
            cost_per_call=config.engine.cost_per_call,
        ),
        verifier=CriteriaVerifier(client),
        evaluator=evaluator,
        config=config.engine,
        events=events,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        events=events,
        scheduler=TaskScheduler(engine, events=events),
    )


def load_tasks(path: Path) -> list[Task]:
    """Read tasks from a JSON list / ``{"tasks": [...]}`` file or a TOML ``[[tasks]]`` file."""
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".toml":
        payload: Any = tomllib.loads(text)
    else:
        payload = json.loads(text)
    if isinstance(payload, dict):
        payload = payload.get("tasks", [])
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a list of tasks")
    return [Task.from_dict(item) for item in payload]


async def _run_tasks(
    runtime: Runtime, tasks: list[Task]
) -> tuple[list[TaskContext], list[Rejection]]:
    scheduler = runtime.scheduler
    rejections: list[Rejection] = []
    for task in tasks:
        if task.dependencies:
            await scheduler.wait_idle()
        try:
            scheduler.submit(task)
        except TaskloopError as exc:
            rejections.append(Rejection(task_id=task.id, reason=str(exc)))
    await scheduler.wait_idle()
    return scheduler.tasks(), rejections


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
def cli() -> None:
    """Drive an AI coding agent through tasks until they are done."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _read_config(config_path)
    if backend:
        config.agent.primary = backend  # type: ignore[assignment]
        if config.agent.fallback == backend:
            config.agent.fallback = "codex" if backend == "claude" else "claude"
    save_config(config_path, config)

    click.echo(f"Initialized taskloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.primary} (fallback {config.agent.fallback})")


@cli.command("config")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def config_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    click.echo(dumps_toml(_read_config(_resolve_config_path(repo_root, config_value))), nl=False)


@cli.command("run")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--max-iterations", type=click.IntRange(min=0), default=None)
@click.option("--skip-evaluation", is_flag=True, default=False)
@click.pass_context
def run_command(
    ctx: click.Context,
    tasks_file: Path,
    config_value: str,
    max_iterations: int | None,
    skip_evaluation: bool,
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _read_config(config_path)
    if max_iterations is not None:
        config.engine.max_iterations = max_iterations
    configure_logging(config.logging.level)

    try:
        tasks = load_tasks(tasks_file)
    except (ValueError, json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Invalid tasks file {tasks_file}: {exc}") from exc

    runtime = _load_runtime(repo_root, config_path, config, evaluate=not skip_evaluation)
    contexts, rejections = asyncio.run(_run_tasks(runtime, tasks))

    for rejection in rejections:
        click.echo(f"Rejected {rejection.task_id}: {rejection.reason}", err=True)
    click.echo(json.dumps([context.to_dict() for context in contexts], indent=2))
    if rejections or any(context.status != "completed" for context in contexts):
        ctx.exit(1)
