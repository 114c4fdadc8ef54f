from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendNotFoundError,
    BackendProcessError,
    BackendTimeoutError,
    InvokeOptions,
)
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.resilient import ResilientBackend, RetryPolicy
from taskloop.backends.scripted import ScriptedBackend, ScriptedReply

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendNotFoundError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "InvokeOptions",
    "ResilientBackend",
    "RetryPolicy",
    "ScriptedBackend",
    "ScriptedReply",
]
