from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from taskloop.backends.base import BackendEventHook, BackendProcessError, InvokeOptions
from taskloop.backends.process import ProcessBackend

AGENT_MESSAGE_TYPES = {"agent_message", "agent_message_delta"}


class CodexBackend(ProcessBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(self, prompt: str, options: InvokeOptions) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if options.auto_approve:
            command.append("--full-auto")
        if options.system_prompt:
            command.extend(
                ["-c", f"instructions={json.dumps(options.system_prompt, ensure_ascii=False)}"]
            )
        command.append(prompt)
        return command

    def _check_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        msg = event.get("msg")
        if isinstance(msg, dict) and msg.get("type") == "error":
            event_type = "error"
            event = msg
        if event_type in {"error", "turn.failed"}:
            error = event.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            detail = error or event.get("message") or "unknown error"
            raise BackendProcessError(
                f"Codex reported an error: {detail}", backend=self.name, retriable=True
            )

    def _extract_content(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if event.get("type") == "item.completed" and item.get("type") == "agent_message":
                text = item.get("text")
                return text if isinstance(text, str) else ""
            return ""

        msg = event.get("msg")
        if isinstance(msg, dict):
            if msg.get("type") in AGENT_MESSAGE_TYPES:
                # Deltas repeat the final agent_message, keep only the completed one.
                if msg.get("type") == "agent_message_delta":
                    return ""
                message = msg.get("message")
                return message if isinstance(message, str) else ""
            return ""

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""
