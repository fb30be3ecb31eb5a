from codexbridge.backends.base import (
    TaskBackend,
    TaskExecutionError,
    TaskExitError,
    TaskSpawnError,
    TaskTimeoutError,
)
from codexbridge.backends.codex import CodexBackend
from codexbridge.backends.git import GitResult, GitRunner

__all__ = [
    "CodexBackend",
    "GitResult",
    "GitRunner",
    "TaskBackend",
    "TaskExecutionError",
    "TaskExitError",
    "TaskSpawnError",
    "TaskTimeoutError",
]
