from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from codexbridge.backends.base import (
    TaskBackend,
    TaskExitError,
    TaskSpawnError,
    TaskTimeoutError,
)

NO_OUTPUT = "(no output)"
KILL_GRACE_SECONDS = 5.0


class CodexBackend(TaskBackend):
    def __init__(
        self,
        binary: str = "codex",
        timeout_seconds: float = 600.0,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, working_dir: Path, sandbox: str, instruction: str) -> list[str]:
        return [
            self.binary,
            "exec",
            "--cd",
            str(working_dir),
            "--sandbox",
            sandbox,
            instruction,
        ]

    @staticmethod
    def build_env(working_dir: Path, git_dir: Path | None) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_DIR"] = str(git_dir if git_dir is not None else working_dir / ".git")
        env["GIT_WORK_TREE"] = str(working_dir)
        return env

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            sink.append(chunk.decode("utf-8", errors="replace"))

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def run(
        self,
        working_dir: Path,
        sandbox: str,
        instruction: str,
        *,
        git_dir: Path | None = None,
    ) -> str:
        command = self.build_command(working_dir, sandbox, instruction)
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:6],
                "sandbox": sandbox,
                "instruction_chars": len(instruction),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_dir),
                env=self.build_env(working_dir, git_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TaskSpawnError(
                f"Could not start {self.binary}: {exc}",
                backend="codex",
            ) from exc

        out: list[str] = []
        err: list[str] = []
        readers = asyncio.gather(
            self._drain(process.stdout, out),
            self._drain(process.stderr, err),
        )
        try:
            await asyncio.wait_for(self._wait(process, readers), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            await self._terminate(process)
            readers.cancel()
            self._emit({"event": "codex_cli_timeout", "timeout_seconds": self.timeout_seconds})
            raise TaskTimeoutError(
                f"codex timed out after {self.timeout_seconds:g}s. "
                "Increase CODEX_TIMEOUT_MS if needed.",
                timeout_seconds=self.timeout_seconds,
                backend="codex",
            ) from exc
        except asyncio.CancelledError:
            await self._terminate(process)
            readers.cancel()
            raise

        stdout = "".join(out)
        stderr = "".join(err)
        return_code = process.returncode
        self._emit({"event": "codex_cli_exit", "exit_code": return_code, "stderr": stderr[:400]})
        if return_code != 0:
            message = stderr.strip() or stdout.strip() or f"codex exited with code {return_code}"
            raise TaskExitError(
                message,
                stderr=stderr,
                exit_code=return_code,
                backend="codex",
            )
        return stdout or NO_OUTPUT

    @staticmethod
    async def _wait(process: asyncio.subprocess.Process, readers: asyncio.Future) -> None:
        await readers
        await process.wait()
