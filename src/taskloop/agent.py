from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    InvokeOptions,
)
from taskloop.errors import SessionNotFoundError
from taskloop.models import Clock, utcnow

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[str], None]


@dataclass(slots=True)
class AgentResult:
    content: str
    duration_ms: int
    session_id: str | None = None


@dataclass(slots=True)
class AgentSession:
    id: str
    working_directory: Path | None
    started_at: datetime
    last_activity: datetime
    invocations: int = 0


class AgentClient:
    """One round-trip per ``invoke`` against an agent backend.

    Enforces the per-call timeout and guarantees that every invocation ends in
    exactly one ``AgentResult`` or one ``BackendExecutionError`` subclass.
    """

    def __init__(
        self,
        backend: AgentBackend,
        defaults: InvokeOptions | None = None,
        *,
        working_directory: Path | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.backend = backend
        self.defaults = defaults or InvokeOptions()
        self.working_directory = working_directory
        self._clock = clock
        self._sessions: dict[str, AgentSession] = {}
        self._current_session: str | None = None

    @property
    def current_session_id(self) -> str | None:
        return self._current_session

    def open_session(self, working_directory: Path | None = None) -> AgentSession:
        now = self._clock()
        session = AgentSession(
            id=f"session-{uuid4().hex[:12]}",
            working_directory=working_directory or self.working_directory,
            started_at=now,
            last_activity=now,
        )
        self._sessions[session.id] = session
        self._current_session = session.id
        logger.debug("Opened agent session %s", session.id)
        return replace(session)

    def ensure_session(self) -> str:
        if self._current_session is None:
            return self.open_session().id
        return self._current_session

    def close_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        del self._sessions[session_id]
        if self._current_session == session_id:
            self._current_session = None
        logger.debug("Closed agent session %s", session_id)

    def sessions(self) -> list[AgentSession]:
        return [replace(session) for session in self._sessions.values()]

    def _resolve_options(
        self, options: InvokeOptions | None, session: AgentSession | None
    ) -> InvokeOptions:
        resolved = replace(options) if options is not None else replace(self.defaults)
        if resolved.working_directory is None:
            if session is not None and session.working_directory is not None:
                resolved.working_directory = session.working_directory
            else:
                resolved.working_directory = self.working_directory
        return resolved

    async def invoke(
        self,
        prompt: str,
        options: InvokeOptions | None = None,
        *,
        session_id: str | None = None,
        on_chunk: ChunkHandler | None = None,
    ) -> AgentResult:
        session: AgentSession | None = None
        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
        resolved = self._resolve_options(options, session)

        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in self.backend.execute(prompt, resolved):
                chunks.append(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
            return "".join(chunks)

        timeout = resolved.timeout_seconds if resolved.timeout_seconds > 0 else None
        started = time.monotonic()
        try:
            content = await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            logger.warning("Agent call timed out after %.1fs", resolved.timeout_seconds)
            raise BackendTimeoutError(
                f"Agent did not respond within {resolved.timeout_seconds:.1f}s",
                backend=self.backend.name,
                retriable=True,
            ) from exc
        except BackendExecutionError:
            raise
        except Exception as exc:
            raise BackendExecutionError(
                f"Agent invocation failed: {exc}",
                backend=self.backend.name,
                retriable=False,
            ) from exc
        finally:
            if session is not None:
                session.invocations += 1
                session.last_activity = self._clock()

        return AgentResult(
            content=content.strip(),
            duration_ms=int((time.monotonic() - started) * 1000),
            session_id=session_id,
        )

    async def cancel(self) -> None:
        await self.backend.cancel()
