from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class TaskExecutionError(RuntimeError):
    """Raised when a task process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class TaskTimeoutError(TaskExecutionError):
    """Raised when a task exceeds its wall-clock bound and was terminated."""

    def __init__(self, message: str, *, timeout_seconds: float, backend: str | None = None) -> None:
        super().__init__(message, backend=backend)
        self.timeout_seconds = timeout_seconds


class TaskExitError(TaskExecutionError):
    """Raised when a task process exits with a nonzero code."""

    def __init__(
        self,
        message: str,
        *,
        stderr: str = "",
        exit_code: int | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, exit_code=exit_code)
        self.stderr = stderr


class TaskSpawnError(TaskExecutionError):
    """Raised when the task process could not be started at all."""


class TaskBackend(ABC):
    @abstractmethod
    async def run(
        self,
        working_dir: Path,
        sandbox: str,
        instruction: str,
        *,
        git_dir: Path | None = None,
    ) -> str:
        """Run one task inside ``working_dir`` and return its captured output."""
