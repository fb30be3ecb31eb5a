from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stderr.strip() or self.stdout.strip()


class GitRunner:
    """Runs git against an explicit working directory; failures come back as results."""

    def __init__(self, binary: str = "git") -> None:
        self.binary = binary

    async def run(self, working_dir: Path, args: list[str]) -> GitResult:
        command = (self.binary, "-C", str(working_dir), "--no-pager", *args)
        return await self._invoke(command)

    async def run_raw(self, args: list[str]) -> GitResult:
        """Run git without ``-C`` so callers can pass ``--git-dir``/``--work-tree`` themselves."""
        return await self._invoke((self.binary, "--no-pager", *args))

    async def _invoke(self, command: tuple[str, ...]) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return GitResult(args=command, returncode=127, stdout="", stderr=str(exc))
        stdout_bytes, stderr_bytes = await process.communicate()
        return GitResult(
            args=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
