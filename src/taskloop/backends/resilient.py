from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from taskloop.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendNotFoundError,
    BackendTimeoutError,
    InvokeOptions,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff before retry ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Primary/fallback pair with a per-attempt timeout and retries.

    Each backend gets ``max_retries + 1`` attempts. Errors flagged as not
    retriable move straight on to the fallback. Output is buffered per attempt,
    so a failed attempt never leaks partial chunks to the caller.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, backend_name: str, attempt: int, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "backend": backend_name, "attempt": attempt, **fields})

    def total_timeout(self) -> float:
        """Longest one ``execute`` call can take across every attempt and backoff."""
        policy = self.retry_policy
        attempts = policy.max_retries + 1
        backoff = sum(policy.delay_for(attempt) for attempt in range(1, attempts))
        return len(self._candidates()) * (attempts * policy.timeout_seconds + backoff)

    def _candidates(self) -> list[tuple[str, AgentBackend]]:
        if self.fallback_name == self.primary_name:
            return [(self.primary_name, self.primary_backend)]
        return [
            (self.primary_name, self.primary_backend),
            (self.fallback_name, self.fallback_backend),
        ]

    async def _attempt(
        self, backend: AgentBackend, prompt: str, options: InvokeOptions
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [chunk async for chunk in backend.execute(prompt, options)]

        limit = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=limit)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {limit:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    @staticmethod
    def _exhausted(failures: list[str], last: BackendExecutionError | None) -> Exception:
        message = "All backend attempts failed. " + "; ".join(failures[-6:])
        if isinstance(last, BackendNotFoundError):
            return BackendNotFoundError(message, backend=last.backend)
        if isinstance(last, BackendTimeoutError):
            return BackendTimeoutError(message, backend=last.backend, retriable=False)
        return BackendExecutionError(
            message,
            backend=last.backend if last else None,
            exit_code=last.exit_code if last else None,
            retriable=False,
        )

    async def _run(self, prompt: str, options: InvokeOptions) -> list[str]:
        failures: list[str] = []
        last: BackendExecutionError | None = None
        for backend_name, backend in self._candidates():
            attempt = 0
            while attempt <= self.retry_policy.max_retries:
                if attempt:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit("backend_retry", backend_name, attempt, delay_seconds=delay)
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._attempt(backend, prompt, options)
                except BackendExecutionError as exc:
                    last = exc
                    failures.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", backend_name, attempt, exc)
                    self._emit(
                        "backend_attempt_failed",
                        backend_name,
                        attempt,
                        error=str(exc),
                        retriable=exc.retriable,
                    )
                    if not exc.retriable:
                        break
                    attempt += 1
                    continue
                if backend_name != self.primary_name:
                    logger.info("Fallback backend %s answered", backend_name)
                    self._emit("backend_fallback_success", backend_name, attempt)
                return chunks
        raise self._exhausted(failures, last)

    async def execute(self, prompt: str, options: InvokeOptions) -> AsyncIterator[str]:
        for chunk in await self._run(prompt, options):
            yield chunk

    async def cancel(self) -> None:
        await self.primary_backend.cancel()
        if self.fallback_backend is not self.primary_backend:
            await self.fallback_backend.cancel()
