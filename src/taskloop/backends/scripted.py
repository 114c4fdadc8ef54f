from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from taskloop.backends.base import AgentBackend, InvokeOptions


@dataclass(slots=True)
class ScriptedReply:
    content: str = ""
    delay_seconds: float = 0.0
    error: Exception | None = None
    chunk_size: int | None = None


Reply = str | ScriptedReply | Exception


@dataclass(slots=True)
class ScriptedCall:
    prompt: str
    options: InvokeOptions


class ScriptedBackend(AgentBackend):
    """In-memory agent returning scripted replies, routed by prompt substring.

    A route maps to a single reply or to a sequence consumed in order, whose
    last entry repeats once exhausted. Prompts matching no route get
    ``default``.
    """

    name = "scripted"

    def __init__(
        self,
        routes: Sequence[tuple[str, Reply | Sequence[Reply]]] | None = None,
        default: Reply = "done",
    ) -> None:
        self._routes: list[tuple[str, list[Reply]]] = []
        for needle, reply in routes or ():
            if isinstance(reply, (str, ScriptedReply, Exception)):
                self._routes.append((needle, [reply]))
            else:
                self._routes.append((needle, list(reply)))
        self.default = default
        self.calls: list[ScriptedCall] = []
        self.cancelled = 0

    def add_route(self, needle: str, *replies: Reply) -> None:
        self._routes.append((needle, list(replies)))

    def prompts(self, needle: str | None = None) -> list[str]:
        return [call.prompt for call in self.calls if needle is None or needle in call.prompt]

    def _next_reply(self, prompt: str) -> ScriptedReply:
        reply: Reply = self.default
        for needle, replies in self._routes:
            if needle in prompt:
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                break
        if isinstance(reply, ScriptedReply):
            return reply
        if isinstance(reply, Exception):
            return ScriptedReply(error=reply)
        return ScriptedReply(content=reply)

    async def execute(self, prompt: str, options: InvokeOptions) -> AsyncIterator[str]:
        self.calls.append(ScriptedCall(prompt=prompt, options=options))
        reply = self._next_reply(prompt)
        if reply.delay_seconds > 0:
            await asyncio.sleep(reply.delay_seconds)
        if reply.error is not None:
            raise reply.error
        if reply.chunk_size:
            for start in range(0, len(reply.content), reply.chunk_size):
                yield reply.content[start : start + reply.chunk_size]
        elif reply.content:
            yield reply.content

    async def cancel(self) -> None:
        self.cancelled += 1
