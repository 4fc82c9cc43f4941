from foreman.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from foreman.backends.command import ClaudeCodeBackend, CodexBackend, CommandBackend
from foreman.backends.openai_api import OpenAIBackend
from foreman.backends.resilient import BackendRetryPolicy, ResilientBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendRetryPolicy",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandBackend",
    "OpenAIBackend",
    "ResilientBackend",
]
