from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from codexbridge.backends.base import TaskBackend, TaskExecutionError
from codexbridge.backends.git import GitRunner
from codexbridge.commands import COMMAND_KINDS, ONE_TAP_PUSH, Command, parse_command, split_pr_argument
from codexbridge.config import BridgeConfig
from codexbridge.gate import BusyError, ConcurrencyGate
from codexbridge.github import GitHubClient, GitHubError, parse_github_slug
from codexbridge.output import format_error, sanitize_push_narration
from codexbridge.prompts import build_instruction, history_entry
from codexbridge.push import NoPendingPushError, PushError, PushRequestError, PushWorkflow
from codexbridge.state.registry import DEFAULT_ALIAS, RepoContext, RepoRegistry, RepoRegistryError
from codexbridge.state.sessions import SessionStore

logger = logging.getLogger(__name__)

START_TEXT = (
    "✅ Codex bridge online.\n\n"
    "Commands:\n"
    "/new or /clear - reset this chat's memory\n"
    "/state - show memory + pending push\n"
    "/push <description> - stage a push request\n"
    "/confirmpush - run staged push\n"
    "/cancelpush - cancel staged push\n"
    "/repo - list or switch repositories (/repo help)\n"
    "/pr <title>[|body] - open a pull request for the active branch\n\n"
    "You can also send a screenshot (with optional caption), and I'll pass it to Codex."
)

REPO_HELP = (
    "Repo commands:\n"
    "/repo list - show aliases and the active repo\n"
    "/repo add <alias> <path> [branch] [remote] - register a git working tree\n"
    "/repo use <alias> - switch the active repo (clears all chat memory)\n"
    "/repo remove <alias> - forget an alias\n"
    f'"{DEFAULT_ALIAS}" always points at the configured TARGET_REPO_DIR.'
)

CONFIRM_KEYBOARD = [["/confirmpush", "/cancelpush"]]
SUGGEST_PUSH_KEYBOARD = [[ONE_TAP_PUSH]]


@dataclass(slots=True)
class Reply:
    text: str
    keyboard: list[list[str]] | None = None
    one_time_keyboard: bool = True
    is_error: bool = False


ImageFetcher = Callable[[Path], Awaitable[Path | None]]
Send = Callable[[Reply], Awaitable[None]]


@dataclass(slots=True)
class IncomingMessage:
    chat_id: int | str
    text: str = ""
    fetch_image: ImageFetcher | None = None

    @property
    def has_image(self) -> bool:
        return self.fetch_image is not None


class Bridge:
    def __init__(
        self,
        config: BridgeConfig,
        sessions: SessionStore,
        registry: RepoRegistry,
        gate: ConcurrencyGate,
        backend: TaskBackend,
        git: GitRunner,
        github: GitHubClient | None = None,
        push: PushWorkflow | None = None,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.registry = registry
        self.gate = gate
        self.backend = backend
        self.git = git
        self.github = github
        self.push = push or PushWorkflow(sessions, git)
        self._handlers: dict[str, Callable[[IncomingMessage, Command, Send], Awaitable[None]]] = {
            "start": self._handle_start,
            "reset": self._handle_reset,
            "state": self._handle_state,
            "push": self._handle_push,
            "confirm_push": self._handle_confirm_push,
            "cancel_push": self._handle_cancel_push,
            "repo": self._handle_repo,
            "pr": self._handle_pr,
            "prompt": self._handle_prompt,
        }
        missing = set(COMMAND_KINDS) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for command kinds: {', '.join(sorted(missing))}")

    def _error(self, message: object) -> Reply:
        return Reply(format_error(message, self.config.telegram.max_message), is_error=True)

    async def handle(self, message: IncomingMessage, send: Send) -> None:
        text = (message.text or "").strip()
        if not text and not message.has_image:
            return
        command = parse_command(text)
        logger.debug("chat %s -> %s", message.chat_id, command.kind)
        try:
            await self._handlers[command.kind](message, command, send)
        except BusyError as exc:
            await send(Reply(f"⏳ {exc}"))

    async def _handle_start(self, message: IncomingMessage, command: Command, send: Send) -> None:
        await send(Reply(START_TEXT))

    async def _handle_reset(self, message: IncomingMessage, command: Command, send: Send) -> None:
        with self.gate.hold():
            self.sessions.reset(message.chat_id)
            self.sessions.save()
        await send(Reply("Session memory cleared for this chat."))

    async def _handle_state(self, message: IncomingMessage, command: Command, send: Send) -> None:
        session = self.sessions.get(message.chat_id)
        pending = f"yes ({session.pending_push.created_at})" if session.pending_push else "no"
        repo = self.registry.active()
        await send(
            Reply(
                f"History entries: {len(session.history)}\n"
                f"Pending push: {pending}\n"
                f"Active repo: {repo.describe()}"
            )
        )

    async def _handle_push(self, message: IncomingMessage, command: Command, send: Send) -> None:
        with self.gate.hold():
            try:
                pending = self.push.stage(message.chat_id, command.argument)
            except PushRequestError as exc:
                await send(Reply(str(exc)))
                return
        if command.one_tap:
            await send(
                Reply("Push staged. Confirm to run commit + push:", keyboard=CONFIRM_KEYBOARD)
            )
            return
        await send(
            Reply(
                f'Push request staged:\n"{pending.description}"\n\n'
                "Send /confirmpush to execute, or /cancelpush to cancel."
            )
        )

    async def _handle_cancel_push(
        self, message: IncomingMessage, command: Command, send: Send
    ) -> None:
        with self.gate.hold():
            self.push.cancel(message.chat_id)
        await send(Reply("Pending push canceled."))

    async def _handle_confirm_push(
        self, message: IncomingMessage, command: Command, send: Send
    ) -> None:
        if self.push.pending(message.chat_id) is None:
            await send(Reply("No pending push. Use /push <description> first."))
            return
        with self.gate.hold():
            repo = self.registry.active()
            notice = "🖼️ Screenshot received. Running..." if message.has_image else "🧠 Running..."
            await send(Reply(notice))

            async def execute(description: str) -> str:
                return await self._run_task(message, repo, description, push=True)

            try:
                outcome = await self.push.confirm(message.chat_id, repo, execute)
            except NoPendingPushError as exc:
                await send(Reply(str(exc)))
                return
            except (TaskExecutionError, PushError) as exc:
                logger.warning("Confirmed push failed for chat %s: %s", message.chat_id, exc)
                await send(self._error(exc))
                return
        await send(Reply(outcome.report()))

    async def _handle_prompt(self, message: IncomingMessage, command: Command, send: Send) -> None:
        with self.gate.hold():
            repo = self.registry.active()
            notice = "🖼️ Screenshot received. Running..." if message.has_image else "🧠 Running..."
            await send(Reply(notice))
            try:
                result = await self._run_task(message, repo, command.argument, push=False)
            except TaskExecutionError as exc:
                logger.warning("Task failed for chat %s: %s", message.chat_id, exc)
                await send(self._error(exc))
                return
            finally:
                self.sessions.save()
            keyboard = None
            if await self.push.has_work_not_on_remote(repo):
                keyboard = SUGGEST_PUSH_KEYBOARD
        await send(Reply(result, keyboard=keyboard, one_time_keyboard=False))

    async def _run_task(
        self,
        message: IncomingMessage,
        repo: RepoContext,
        request: str,
        *,
        push: bool,
    ) -> str:
        image_path = None
        if message.fetch_image is not None:
            repo.inputs_dir.mkdir(parents=True, exist_ok=True)
            image_path = await message.fetch_image(repo.inputs_dir)

        instruction = build_instruction(
            repo.dir,
            push=push,
            history_context=self.sessions.build_context(message.chat_id, self.config.history.turns),
            request=request,
            image_path=image_path,
        )
        self.sessions.add_history(
            message.chat_id, "user", history_entry(request, push=push, image_path=image_path)
        )
        sandbox = self.config.task.push_sandbox if push else self.config.task.default_sandbox
        raw = await self.backend.run(repo.dir, sandbox, instruction, git_dir=repo.git_dir)
        result = sanitize_push_narration(raw) if push else raw
        self.sessions.add_history(message.chat_id, "assistant", result)
        return result

    async def _handle_repo(self, message: IncomingMessage, command: Command, send: Send) -> None:
        action, args = command.argument, command.args
        if action == "list":
            await send(Reply(self._render_repo_list()))
            return
        if action == "help":
            await send(Reply(REPO_HELP))
            return
        if action == "add" and len(args) < 2:
            await send(Reply("Use: /repo add <alias> <path> [branch] [remote]"))
            return
        if action in ("use", "remove") and len(args) != 1:
            await send(Reply(f"Use: /repo {action} <alias>"))
            return

        with self.gate.hold():
            try:
                if action == "add":
                    branch = args[2] if len(args) > 2 else None
                    remote = args[3] if len(args) > 3 else None
                    context = self.registry.add_alias(args[0], args[1], branch, remote)
                    text = f"Added repo alias {context.describe()}\nUse /repo use {context.name} to switch."
                elif action == "use":
                    context = self.registry.switch_active(args[0])
                    text = (
                        f"Active repo is now {context.describe()}\n"
                        "Session memory cleared for all chats."
                    )
                else:
                    fell_back = self.registry.remove_alias(args[0])
                    text = f"Removed repo alias {args[0].strip().casefold()}."
                    if fell_back:
                        text += (
                            f"\nIt was active, so the bridge is back on {DEFAULT_ALIAS}. "
                            "Session memory cleared for all chats."
                        )
            except RepoRegistryError as exc:
                await send(self._error(exc))
                return
        logger.info("Repo command %s %s from chat %s", action, " ".join(args), message.chat_id)
        await send(Reply(text))

    def _render_repo_list(self) -> str:
        active = self.registry.active_name
        lines = ["Repos:"]
        for name, definition in self.registry.list_aliases().items():
            marker = " (active)" if name == active else ""
            lines.append(f"• {name}{marker}: {definition.dir} ({definition.remote}/{definition.branch})")
        return "\n".join(lines)

    async def _handle_pr(self, message: IncomingMessage, command: Command, send: Send) -> None:
        title, body = split_pr_argument(command.argument)
        if not title:
            await send(Reply("Use: /pr <title>[|body]"))
            return
        if self.github is None or not self.github.configured:
            await send(Reply("GitHub token is not configured. Set GITHUB_TOKEN to use /pr."))
            return

        repo = self.registry.active()
        remote = await self.git.run(repo.dir, ["remote", "get-url", repo.remote])
        slug = parse_github_slug(remote.stdout) if remote.ok else None
        if slug is None:
            await send(
                self._error(f"Remote {repo.remote} of {repo.name} is not a GitHub repository.")
            )
            return

        base = self.config.github.pr_base
        try:
            pr = await self.github.create_pull_request(
                slug, head=repo.branch, base=base, title=title, body=body
            )
        except GitHubError as exc:
            await send(self._error(exc))
            return

        lines = [f"Opened PR #{pr.number}: {pr.title}", pr.url, "", f"CI on {repo.branch}:"]
        try:
            runs = await self.github.list_workflow_runs(slug, branch=repo.branch, limit=3)
        except GitHubError as exc:
            lines.append(f"- unavailable ({exc})")
        else:
            lines.extend(run.summary() for run in runs)
            if not runs:
                lines.append("- no workflow runs yet")
        await send(Reply("\n".join(lines)))
