import asyncio
import json
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from codexbridge.backends import GitRunner, TaskBackend, TaskTimeoutError
from codexbridge.bridge import Bridge, IncomingMessage, Reply
from codexbridge.commands import ONE_TAP_PUSH
from codexbridge.config import BridgeConfig
from codexbridge.gate import ConcurrencyGate
from codexbridge.github import GitHubClient
from codexbridge.state import RepoDefinition, RepoRegistry, SessionStore


class FakeBackend(TaskBackend):
    def __init__(
        self,
        output: str = "done",
        action: Callable[[Path], None] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.output = output
        self.action = action
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        working_dir: Path,
        sandbox: str,
        instruction: str,
        *,
        git_dir: Path | None = None,
    ) -> str:
        self.calls.append(
            {
                "working_dir": working_dir,
                "sandbox": sandbox,
                "instruction": instruction,
                "git_dir": git_dir,
            }
        )
        if self.error is not None:
            raise self.error
        if self.action is not None:
            self.action(working_dir)
        return self.output


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, check=True, text=True, capture_output=True
    )
    return completed.stdout.strip()


def _init_tracked_repo(tmp_path: Path) -> Path:
    remote = tmp_path / "remote.git"
    work = tmp_path / "work"
    work.mkdir()
    _git(tmp_path, "init", "--bare", str(remote))
    _git(work, "init")
    _git(work, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(work, "config", "user.email", "test@example.com")
    _git(work, "config", "user.name", "Test User")
    _git(work, "config", "commit.gpgsign", "false")
    (work / "README.md").write_text("seed\n", encoding="utf-8")
    _git(work, "add", "README.md")
    _git(work, "commit", "-m", "seed")
    _git(work, "remote", "add", "origin", str(remote))
    _git(work, "push", "-u", "origin", "main")
    return work


def _build_bridge(
    tmp_path: Path,
    backend: TaskBackend,
    github: GitHubClient | None = None,
) -> Bridge:
    work = _init_tracked_repo(tmp_path)
    config = BridgeConfig.default()
    config.base_dir = tmp_path
    config.repo.dir = str(work)
    config.task.push_sandbox = "danger-full-access"
    config.github.pr_base = "develop"
    sessions = SessionStore(config.session_path)
    registry = RepoRegistry(config.alias_path, RepoDefinition(dir=work), sessions)
    registry.load()
    return Bridge(
        config=config,
        sessions=sessions,
        registry=registry,
        gate=ConcurrencyGate(),
        backend=backend,
        git=GitRunner(),
        github=github,
    )


def _send(bridge: Bridge, text: str, chat_id: int = 1, **kwargs: Any) -> list[Reply]:
    replies: list[Reply] = []

    async def send(reply: Reply) -> None:
        replies.append(reply)

    asyncio.run(bridge.handle(IncomingMessage(chat_id=chat_id, text=text, **kwargs), send))
    return replies


def _commit(name: str) -> Callable[[Path], None]:
    def action(working_dir: Path) -> None:
        (working_dir / name).write_text("content\n", encoding="utf-8")
        _git(working_dir, "add", name)
        _git(working_dir, "commit", "-m", f"add {name}")

    return action


def test_start_lists_commands(tmp_path: Path) -> None:
    bridge = _build_bridge(tmp_path, FakeBackend())

    replies = _send(bridge, "/start")

    assert len(replies) == 1
    assert "/confirmpush" in replies[0].text
    assert "/repo" in replies[0].text


def test_empty_message_is_ignored(tmp_path: Path) -> None:
    backend = FakeBackend()
    bridge = _build_bridge(tmp_path, backend)

    assert _send(bridge, "   ") == []
    assert backend.calls == []


def test_prompt_runs_task_and_records_history(tmp_path: Path) -> None:
    backend = FakeBackend(output="Summary of changes")
    bridge = _build_bridge(tmp_path, backend)
    work = tmp_path / "work"

    replies = _send(bridge, "fix the footer")

    assert [reply.text for reply in replies] == ["🧠 Running...", "Summary of changes"]
    assert replies[-1].keyboard is None
    call = backend.calls[0]
    assert call["working_dir"] == work
    assert call["git_dir"] == work / ".git"
    assert call["sandbox"] == "workspace-write"
    assert call["instruction"].startswith(f"You are working ONLY inside:\n{work}")
    assert "You MUST NOT:\n- Run git commit" in call["instruction"]
    assert "No prior conversation context." in call["instruction"]
    assert call["instruction"].endswith("User request:\nfix the footer")

    history = bridge.sessions.get(1).history
    assert [(turn.role, turn.content) for turn in history] == [
        ("user", "fix the footer"),
        ("assistant", "Summary of changes"),
    ]
    stored = json.loads(bridge.config.session_path.read_text(encoding="utf-8"))
    assert len(stored["1"]["history"]) == 2


def test_second_prompt_carries_history_context(tmp_path: Path) -> None:
    backend = FakeBackend(output="first answer")
    bridge = _build_bridge(tmp_path, backend)

    _send(bridge, "first question")
    _send(bridge, "second question")

    instruction = backend.calls[1]["instruction"]
    assert "[1] USER (" in instruction
    assert "first question" in instruction
    assert "[2] ASSISTANT (" in instruction


def test_prompt_suggests_push_when_work_is_not_on_remote(tmp_path: Path) -> None:
    def leave_dirty(working_dir: Path) -> None:
        (working_dir / "draft.txt").write_text("wip\n", encoding="utf-8")

    bridge = _build_bridge(tmp_path, FakeBackend(action=leave_dirty))

    replies = _send(bridge, "start a draft")

    assert replies[-1].keyboard == [[ONE_TAP_PUSH]]
    assert replies[-1].one_time_keyboard is False


def test_busy_gate_rejects_mutating_commands_but_not_reads(tmp_path: Path) -> None:
    backend = FakeBackend()
    bridge = _build_bridge(tmp_path, backend)
    assert bridge.gate.try_acquire()

    try:
        prompt = _send(bridge, "do work")
        reset = _send(bridge, "/new")
        state = _send(bridge, "/state")
    finally:
        bridge.gate.release()

    busy = "⏳ I'm still working on the last request. Send again in a moment."
    assert [reply.text for reply in prompt] == [busy]
    assert [reply.text for reply in reset] == [busy]
    assert state[0].text.startswith("History entries: 0")
    assert backend.calls == []


def test_task_error_is_reported_and_gate_released(tmp_path: Path) -> None:
    error = TaskTimeoutError(
        "codex timed out after 600s. Increase CODEX_TIMEOUT_MS if needed.",
        timeout_seconds=600,
    )
    bridge = _build_bridge(tmp_path, FakeBackend(error=error))

    replies = _send(bridge, "slow task")

    assert replies[-1].is_error is True
    assert replies[-1].text.startswith("❌ Error:\ncodex timed out after 600s")
    assert bridge.gate.busy is False
    assert [turn.role for turn in bridge.sessions.get(1).history] == ["user"]


def test_push_stage_confirm_and_push(tmp_path: Path) -> None:
    backend = FakeBackend(
        output="Committed header fix.\nPlease push main when you can.",
        action=_commit("header.txt"),
    )
    bridge = _build_bridge(tmp_path, backend)

    staged = _send(bridge, "/push fix the header")
    assert staged[0].text.startswith('Push request staged:\n"fix the header"')

    replies = _send(bridge, "/confirmpush")

    assert replies[0].text == "🧠 Running..."
    report = replies[-1].text
    assert report.startswith("Committed header fix.\n\nPush status:")
    assert "Please push" not in report
    assert report.endswith("- Result: success")
    assert backend.calls[0]["sandbox"] == "danger-full-access"
    assert "Create exactly one commit" in backend.calls[0]["instruction"]
    assert bridge.sessions.get(1).pending_push is None
    assert bridge.sessions.get(1).history[0].content == "/confirmpush fix the header"
    assert _git(tmp_path / "remote.git", "rev-parse", "main") == _git(
        tmp_path / "work", "rev-parse", "HEAD"
    )


def test_confirm_without_pending_push(tmp_path: Path) -> None:
    backend = FakeBackend()
    bridge = _build_bridge(tmp_path, backend)

    replies = _send(bridge, "/confirmpush")

    assert [reply.text for reply in replies] == ["No pending push. Use /push <description> first."]
    assert backend.calls == []
    assert 1 not in bridge.sessions
    assert not bridge.config.session_path.exists()


def test_one_tap_push_offers_confirm_keyboard(tmp_path: Path) -> None:
    bridge = _build_bridge(tmp_path, FakeBackend())

    replies = _send(bridge, "/push commit and push")

    assert replies[0].keyboard == [["/confirmpush", "/cancelpush"]]
    assert bridge.push.pending(1).description == "commit and push"


def test_push_without_description_and_cancel(tmp_path: Path) -> None:
    bridge = _build_bridge(tmp_path, FakeBackend())

    assert _send(bridge, "/push")[0].text == "Use: /push <description>"
    _send(bridge, "/push ship it")
    state = _send(bridge, "/state")[0].text
    assert "Pending push: yes (" in state

    assert _send(bridge, "/cancelpush")[0].text == "Pending push canceled."
    assert bridge.push.pending(1) is None


def test_screenshot_is_downloaded_into_inputs_dir(tmp_path: Path) -> None:
    backend = FakeBackend()
    bridge = _build_bridge(tmp_path, backend)

    async def fetch_image(inputs_dir: Path) -> Path:
        target = inputs_dir / "shot.jpg"
        target.write_bytes(b"\xff\xd8")
        return target

    replies = _send(bridge, "", fetch_image=fetch_image)

    expected = (tmp_path / "work" / ".codex-inputs" / "shot.jpg").resolve()
    assert replies[0].text == "🖼️ Screenshot received. Running..."
    assert expected.exists()
    instruction = backend.calls[0]["instruction"]
    assert f"User attached a screenshot at: {expected}" in instruction
    assert "(no caption text provided; use the screenshot context)" in instruction
    assert bridge.sessions.get(1).history[0].content == (
        f"(image-only message)\n[screenshot: {expected}]"
    )


def test_repo_commands_switch_active_tree(tmp_path: Path) -> None:
    backend = FakeBackend()
    bridge = _build_bridge(tmp_path, backend)
    other = tmp_path / "other"
    (other / ".git").mkdir(parents=True)
    _send(bridge, "remember me")

    added = _send(bridge, f"/repo add Other {other} develop")
    assert added[0].text.startswith("Added repo alias other:")

    switched = _send(bridge, "/repo use other")
    assert "Session memory cleared for all chats." in switched[0].text
    assert len(bridge.sessions) == 0

    listing = _send(bridge, "/repo list")[0].text
    assert "• other (active):" in listing
    assert "(origin/develop)" in listing

    _send(bridge, "what is here")
    assert backend.calls[-1]["working_dir"] == other.resolve()
    assert backend.calls[-1]["git_dir"] == other.resolve() / ".git"

    removed = _send(bridge, "/repo remove other")[0].text
    assert "back on default" in removed
    assert bridge.registry.active_name == "default"


def test_repo_errors_and_usage(tmp_path: Path) -> None:
    bridge = _build_bridge(tmp_path, FakeBackend())

    assert _send(bridge, "/repo add only-name")[0].text.startswith("Use: /repo add")
    assert _send(bridge, "/repo use")[0].text == "Use: /repo use <alias>"
    unknown = _send(bridge, "/repo use ghost")[0]
    assert unknown.is_error is True
    assert "Unknown repo alias: ghost" in unknown.text
    assert _send(bridge, "/repo")[0].text.startswith("Repo commands:")


def test_pr_requires_github_token(tmp_path: Path) -> None:
    bridge = _build_bridge(tmp_path, FakeBackend())

    assert _send(bridge, "/pr Add login")[0].text.startswith("GitHub token is not configured")
    assert _send(bridge, "/pr")[0].text == "Use: /pr <title>[|body]"


def test_pr_opens_pull_request_and_lists_runs(tmp_path: Path) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(
                201,
                json={"number": 7, "html_url": "https://github.com/acme/web/pull/7", "title": "Add login"},
            )
        return httpx.Response(
            200,
            json={"workflow_runs": [{"name": "CI", "status": "completed", "conclusion": "success"}]},
        )

    github = GitHubClient("ghp_test", transport=httpx.MockTransport(handler))
    bridge = _build_bridge(tmp_path, FakeBackend(), github=github)
    _git(tmp_path / "work", "remote", "set-url", "origin", "git@github.com:acme/web.git")

    replies = _send(bridge, "/pr Add login | Adds OAuth")

    text = replies[0].text
    assert text.startswith("Opened PR #7: Add login\nhttps://github.com/acme/web/pull/7")
    assert "- CI: success" in text
    payload = json.loads(requests[0].content)
    assert requests[0].url.path == "/repos/acme/web/pulls"
    assert payload == {"title": "Add login", "head": "main", "base": "develop", "body": "Adds OAuth"}
    assert requests[1].url.params["branch"] == "main"


def test_pr_rejects_non_github_remote(tmp_path: Path) -> None:
    github = GitHubClient("ghp_test", transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    bridge = _build_bridge(tmp_path, FakeBackend(), github=github)

    reply = _send(bridge, "/pr Add login")[0]

    assert reply.is_error is True
    assert "is not a GitHub repository" in reply.text
