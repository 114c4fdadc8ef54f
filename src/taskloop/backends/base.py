from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    code = "ProcessError"

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""

    code = "Timeout"


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""

    code = "ProcessError"


class BackendNotFoundError(BackendProcessError):
    """Raised when the agent executable cannot be located."""

    code = "NotFound"

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(message, backend=backend, retriable=False)


@dataclass(slots=True)
class InvokeOptions:
    max_turns: int = 1
    auto_approve: bool = True
    timeout_seconds: float = 60.0
    working_directory: Path | None = None
    system_prompt: str | None = None


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_json_lines(stream: asyncio.StreamReader) -> AsyncIterator[dict[str, Any] | str]:
    """Yield decoded JSON objects from a line stream, or raw text for non-JSON lines.

    Objects split across several lines are buffered until they balance.
    """
    parse_buffer = ""
    async for raw_line in stream:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            yield line
            continue
        if isinstance(event, dict):
            yield event
        else:
            yield candidate
    if parse_buffer:
        yield parse_buffer


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, prompt: str, options: InvokeOptions) -> AsyncIterator[str]:
        """Run the agent on ``prompt`` and stream textual chunks."""

    async def cancel(self) -> None:
        """Stop any in-flight execution. Backends without a process ignore this."""
