from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, get_args

CommandKind = Literal[
    "start",
    "reset",
    "state",
    "push",
    "confirm_push",
    "cancel_push",
    "repo",
    "pr",
    "prompt",
]
COMMAND_KINDS: tuple[str, ...] = get_args(CommandKind)

RepoAction = Literal["list", "add", "use", "remove", "help"]
REPO_ACTIONS: tuple[str, ...] = get_args(RepoAction)

ONE_TAP_PUSH = "/push commit and push"
_ONE_TAP_PATTERN = re.compile(r"^/push\s+commit and push$", re.IGNORECASE)

_EXACT = {
    "/start": "start",
    "/new": "reset",
    "/clear": "reset",
    "/state": "state",
    "/confirmpush": "confirm_push",
    "/cancelpush": "cancel_push",
}


@dataclass(slots=True)
class Command:
    kind: CommandKind
    text: str
    argument: str = ""
    args: list[str] = field(default_factory=list)
    one_tap: bool = False


def _prefixed(text: str, name: str) -> str | None:
    """Return the remainder after ``name`` when ``text`` is ``name`` or ``name <rest>``."""
    if text == name:
        return ""
    if text.startswith(name) and text[len(name)].isspace():
        return text[len(name) :].strip()
    return None


def is_one_tap_push(text: str) -> bool:
    return bool(_ONE_TAP_PATTERN.match(str(text or "").strip()))


def parse_command(text: str) -> Command:
    stripped = str(text or "").strip()

    exact = _EXACT.get(stripped)
    if exact is not None:
        return Command(kind=exact, text=stripped)  # type: ignore[arg-type]

    rest = _prefixed(stripped, "/push")
    if rest is not None:
        return Command(
            kind="push",
            text=stripped,
            argument=rest,
            one_tap=is_one_tap_push(stripped),
        )

    rest = _prefixed(stripped, "/repo")
    if rest is not None:
        parts = rest.split()
        action = parts[0].lower() if parts else "help"
        if action not in REPO_ACTIONS:
            action = "help"
        return Command(kind="repo", text=stripped, argument=action, args=parts[1:])

    rest = _prefixed(stripped, "/pr")
    if rest is not None:
        return Command(kind="pr", text=stripped, argument=rest)

    return Command(kind="prompt", text=stripped, argument=stripped)


def split_pr_argument(argument: str) -> tuple[str, str]:
    title, _, body = argument.partition("|")
    return title.strip(), body.strip()
