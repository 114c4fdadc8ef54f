from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from taskloop.backends.base import BackendEventHook, BackendProcessError, InvokeOptions
from taskloop.backends.process import ProcessBackend


class ClaudeCodeBackend(ProcessBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)
        self._saw_assistant_text = False

    def build_command(self, prompt: str, options: InvokeOptions) -> list[str]:
        command = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(max(1, options.max_turns)),
        ]
        if options.auto_approve:
            command.append("--dangerously-skip-permissions")
        if options.system_prompt:
            command.extend(["--append-system-prompt", options.system_prompt])
        return command

    @staticmethod
    def _text_from_content(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""

    def _check_event(self, event: dict[str, Any]) -> None:
        if event.get("type") == "result" and event.get("is_error"):
            detail = event.get("result") or event.get("subtype") or "unknown error"
            raise BackendProcessError(
                f"Claude reported an error result: {detail}",
                backend=self.name,
                retriable=True,
            )

    def _extract_content(self, event: dict[str, Any]) -> str:
        event_type = event.get("type")
        if event_type == "assistant":
            message = event.get("message")
            if isinstance(message, dict):
                text = self._text_from_content(message.get("content"))
                if text:
                    self._saw_assistant_text = True
                return text
            return ""
        if event_type == "result":
            # The result event repeats the final assistant text.
            result = event.get("result")
            if isinstance(result, str) and not self._saw_assistant_text:
                return result
            return ""
        if event_type is None:
            text = self._text_from_content(event.get("content"))
            if text:
                return text
            delta = event.get("delta")
            if isinstance(delta, str):
                return delta
        return ""

    async def execute(self, prompt: str, options: InvokeOptions) -> AsyncIterator[str]:
        self._saw_assistant_text = False
        async for chunk in super().execute(prompt, options):
            yield chunk
