import asyncio
from pathlib import Path

import pytest

from taskloop.agent import AgentClient
from taskloop.backends import (
    BackendExecutionError,
    BackendNotFoundError,
    BackendTimeoutError,
    InvokeOptions,
    ScriptedBackend,
    ScriptedReply,
)
from taskloop.errors import SessionNotFoundError


def test_invoke_returns_content_and_duration() -> None:
    backend = ScriptedBackend(default="  all done  ")
    client = AgentClient(backend, InvokeOptions(max_turns=2, timeout_seconds=5.0))

    result = asyncio.run(client.invoke("implement it"))

    assert result.content == "all done"
    assert result.duration_ms >= 0
    assert result.session_id is None
    assert backend.calls[0].options.max_turns == 2


def test_invoke_streams_chunks_to_handler() -> None:
    backend = ScriptedBackend(default=ScriptedReply(content="abcdefg", chunk_size=3))
    client = AgentClient(backend)
    chunks: list[str] = []

    result = asyncio.run(client.invoke("go", on_chunk=chunks.append))

    assert chunks == ["abc", "def", "g"]
    assert result.content == "abcdefg"


def test_invoke_times_out() -> None:
    backend = ScriptedBackend(default=ScriptedReply(content="late", delay_seconds=1.0))
    client = AgentClient(backend, InvokeOptions(timeout_seconds=0.05))

    with pytest.raises(BackendTimeoutError) as exc_info:
        asyncio.run(client.invoke("slow"))

    assert exc_info.value.code == "Timeout"


def test_invoke_passes_typed_backend_errors_through() -> None:
    backend = ScriptedBackend(default=BackendNotFoundError("no agent", backend="scripted"))
    client = AgentClient(backend)

    with pytest.raises(BackendNotFoundError):
        asyncio.run(client.invoke("anything"))


def test_invoke_wraps_unexpected_errors() -> None:
    backend = ScriptedBackend(default=ValueError("malformed event"))
    client = AgentClient(backend)

    with pytest.raises(BackendExecutionError, match="malformed event") as exc_info:
        asyncio.run(client.invoke("anything"))

    assert exc_info.value.retriable is False
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_sessions_track_invocations_and_working_directory(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    client = AgentClient(backend, working_directory=Path("/unused"))
    session = client.open_session(working_directory=tmp_path)

    async def _run() -> None:
        await client.invoke("first", session_id=session.id)
        await client.invoke("second", session_id=session.id)

    asyncio.run(_run())

    (stored,) = client.sessions()
    assert stored.id == session.id
    assert stored.invocations == 2
    assert stored.last_activity >= stored.started_at
    assert backend.calls[0].options.working_directory == tmp_path
    assert client.current_session_id == session.id


def test_session_copies_do_not_leak_state() -> None:
    client = AgentClient(ScriptedBackend())
    session = client.open_session()
    session.invocations = 99

    assert client.sessions()[0].invocations == 0


def test_close_session_and_unknown_ids() -> None:
    client = AgentClient(ScriptedBackend())
    session_id = client.ensure_session()

    assert client.ensure_session() == session_id
    client.close_session(session_id)
    assert client.sessions() == []
    assert client.current_session_id is None

    with pytest.raises(SessionNotFoundError):
        client.close_session(session_id)
    with pytest.raises(SessionNotFoundError):
        asyncio.run(client.invoke("x", session_id="session-missing"))


def test_cancel_reaches_backend() -> None:
    backend = ScriptedBackend()
    client = AgentClient(backend)

    asyncio.run(client.cancel())

    assert backend.cancelled == 1
