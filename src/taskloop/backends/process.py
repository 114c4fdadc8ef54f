from __future__ import annotations

import asyncio
from abc import abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from taskloop.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendNotFoundError,
    BackendProcessError,
    InvokeOptions,
    iter_json_lines,
)


class ProcessBackend(AgentBackend):
    """Spawns an agent CLI per invocation and streams its JSON-lines output."""

    name = "process"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook
        self._process: asyncio.subprocess.Process | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str, options: InvokeOptions) -> list[str]:
        """Return the argv used to run the agent for ``prompt``."""

    @abstractmethod
    def _extract_content(self, event: dict[str, Any]) -> str:
        """Return the text carried by one streamed event, or an empty string."""

    def _check_event(self, event: dict[str, Any]) -> None:
        """Raise when a streamed event reports a terminal agent failure."""

    def _working_directory(self, options: InvokeOptions) -> str | None:
        cwd = options.working_directory or self.working_directory
        return str(cwd) if cwd else None

    async def execute(self, prompt: str, options: InvokeOptions) -> AsyncIterator[str]:
        command = self.build_command(prompt, options)
        self._emit({"event": f"{self.name}_cli_start", "command": command[:2]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._working_directory(options),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendNotFoundError(
                f"{self.name} binary not found: {self.binary}", backend=self.name
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.",
                backend=self.name,
                retriable=False,
            )

        self._process = process
        try:
            async for item in iter_json_lines(process.stdout):
                if isinstance(item, str):
                    self._emit({"event": f"{self.name}_json_parse_fallback", "line": item[:200]})
                    continue
                self._check_event(item)
                content = self._extract_content(item)
                if content:
                    yield content

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            self._emit(
                {
                    "event": f"{self.name}_cli_exit",
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            if return_code != 0:
                raise BackendProcessError(
                    f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            self._process = None

    async def cancel(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()
            await process.wait()
