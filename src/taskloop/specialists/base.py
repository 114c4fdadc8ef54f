from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from taskloop.agent import AgentClient
from taskloop.backends.base import InvokeOptions


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    system_prompt: str = "You are a software specialist."

    def __init__(self, client: AgentClient, *, options: InvokeOptions | None = None) -> None:
        self.client = client
        self.options = options
        self.calls = 0

    def _options(self) -> InvokeOptions:
        options = replace(self.options) if self.options else replace(self.client.defaults)
        options.system_prompt = self.system_prompt.strip()
        return options

    async def run(self, instruction: str) -> SpecialistResponse:
        self.calls += 1
        result = await self.client.invoke(instruction, self._options())
        return SpecialistResponse(
            role=self.role,
            content=result.content,
            metadata={"instruction": instruction, "duration_ms": result.duration_ms},
        )
