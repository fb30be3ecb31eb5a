"""Staged commit/push workflow and the git checks around it.

A push is staged with a description, then either canceled or confirmed.
Confirmation runs the task under the push policy, observes HEAD and the
ahead-count against the tracked remote branch, and pushes only when the
task actually produced a commit. The staged description is dropped on
every exit from confirmation, so a failed attempt must be staged again.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from codexbridge.backends.git import GitResult, GitRunner
from codexbridge.state.registry import RepoContext
from codexbridge.state.sessions import PendingPush, SessionStore, utcnow_iso

logger = logging.getLogger(__name__)

PushState = Literal["idle", "staged", "confirmed", "skipped", "pushed", "push_failed", "canceled"]


class PushError(RuntimeError):
    """Base class for push workflow failures."""


class PushRequestError(PushError):
    """Raised when a staging request is malformed."""


class NoPendingPushError(PushError):
    """Raised when confirmation is requested with nothing staged."""


class GitOperationError(PushError):
    """Raised when a blocking git command fails mid-workflow."""


class ShadowHistoryError(PushError):
    """Raised when the alternate git dir holds commits the primary tree does not."""


class PushDeliveryError(PushError):
    """Raised when the task committed but ``git push`` failed."""

    def __init__(self, message: str, *, result: GitResult) -> None:
        super().__init__(message)
        self.result = result


@dataclass(slots=True)
class PushOutcome:
    state: PushState
    output: str
    head_before: str
    head_after: str
    ahead: int
    dirty: bool = False
    push_command: str = ""

    def report(self) -> str:
        if self.state == "skipped":
            tree = (
                "- Working tree still has uncommitted changes."
                if self.dirty
                else "- Working tree is clean."
            )
            return (
                f"{self.output}\n\nPush status:\n"
                f"- Skipped: no new commit was created in .git.\n{tree}"
            )
        return f"{self.output}\n\nPush status:\n- Ran: {self.push_command}\n- Result: success"


TaskExecutor = Callable[[str], Awaitable[str]]


class PushWorkflow:
    def __init__(self, sessions: SessionStore, git: GitRunner) -> None:
        self.sessions = sessions
        self.git = git

    def state(self, chat_id: object) -> PushState:
        return "staged" if self.pending(chat_id) else "idle"

    def stage(self, chat_id: object, description: str) -> PendingPush:
        text = str(description or "").strip()
        if not text:
            raise PushRequestError("Use: /push <description>")
        pending = PendingPush(description=text, created_at=utcnow_iso())
        self.sessions.get(chat_id).pending_push = pending
        self.sessions.save()
        return pending

    def cancel(self, chat_id: object) -> bool:
        session = self.sessions.get(chat_id)
        had_pending = session.pending_push is not None
        session.pending_push = None
        self.sessions.save()
        return had_pending

    def pending(self, chat_id: object) -> PendingPush | None:
        session = self.sessions.peek(chat_id)
        return session.pending_push if session else None

    async def head(self, repo: RepoContext) -> str:
        result = await self.git.run(repo.dir, ["rev-parse", "HEAD"])
        if not result.ok:
            raise GitOperationError(f"Unable to read git HEAD.\n{result.output or '(empty)'}")
        return result.stdout.strip()

    @staticmethod
    def _parse_count(result: GitResult) -> int | None:
        if not result.ok:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    async def ahead_count(self, repo: RepoContext) -> int:
        result = await self.git.run(repo.dir, ["rev-list", "--count", repo.tracking_range])
        return self._parse_count(result) or 0

    async def shadow_ahead_count(self, repo: RepoContext) -> int:
        result = await self.git.run_raw(
            [
                "--git-dir",
                str(repo.shadow_git_dir),
                "--work-tree",
                str(repo.dir),
                "rev-list",
                "--count",
                repo.tracking_range,
            ]
        )
        return self._parse_count(result) or 0

    @staticmethod
    def status_args(repo: RepoContext) -> list[str]:
        args = ["status", "--porcelain", "--", "."]
        relative = inputs_relative(repo)
        if relative is not None and str(relative) not in ("", "."):
            args.append(f":(exclude){relative.as_posix()}/**")
        return args

    async def has_relevant_changes(self, repo: RepoContext) -> bool:
        result = await self.git.run(repo.dir, self.status_args(repo))
        return result.ok and bool(result.stdout.strip())

    async def has_work_not_on_remote(self, repo: RepoContext) -> bool:
        if await self.ahead_count(repo) > 0:
            return True
        return await self.has_relevant_changes(repo)

    async def is_dirty(self, repo: RepoContext) -> bool:
        result = await self.git.run(repo.dir, ["status", "--porcelain"])
        return bool(result.stdout.strip())

    async def push(self, repo: RepoContext) -> str:
        result = await self.git.run(repo.dir, ["push", repo.remote, repo.branch])
        if not result.ok:
            raise PushDeliveryError(
                "Codex completed, but git push failed.\n\n"
                f"stdout:\n{result.stdout or '(empty)'}\n\n"
                f"stderr:\n{result.stderr or '(empty)'}",
                result=result,
            )
        return f"git -C {repo.dir} push {repo.remote} {repo.branch}"

    async def confirm(
        self,
        chat_id: object,
        repo: RepoContext,
        execute: TaskExecutor,
    ) -> PushOutcome:
        session = self.sessions.peek(chat_id)
        pending = session.pending_push if session else None
        if session is None or pending is None:
            raise NoPendingPushError("No pending push. Use /push <description> first.")

        try:
            head_before = await self.head(repo)
            shadow_ahead = await self.shadow_ahead_count(repo)
            if shadow_ahead > 0:
                raise ShadowHistoryError(
                    f"Detected commits ahead in {repo.shadow_git_dir.name}. Clean this up before "
                    "using /confirmpush so only .git is the source of truth."
                )

            output = await execute(pending.description)

            head_after = await self.head(repo)
            ahead = await self.ahead_count(repo)
            if head_after == head_before and ahead == 0:
                outcome = PushOutcome(
                    state="skipped",
                    output=output,
                    head_before=head_before,
                    head_after=head_after,
                    ahead=ahead,
                    dirty=await self.is_dirty(repo),
                )
            else:
                command = await self.push(repo)
                outcome = PushOutcome(
                    state="pushed",
                    output=output,
                    head_before=head_before,
                    head_after=head_after,
                    ahead=ahead,
                    push_command=command,
                )
            logger.info(
                "Confirmed push for chat %s finished as %s (%s -> %s, ahead %d)",
                chat_id,
                outcome.state,
                head_before[:10],
                head_after[:10],
                ahead,
            )
            return outcome
        except PushDeliveryError:
            logger.error("Push delivery failed for chat %s in %s", chat_id, repo.dir)
            raise
        finally:
            session.pending_push = None
            self.sessions.save()


def inputs_relative(repo: RepoContext) -> Path | None:
    try:
        return repo.inputs_dir.relative_to(repo.dir.resolve())
    except ValueError:
        return None
