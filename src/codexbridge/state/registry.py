from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from codexbridge.state.sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_ALIAS = "default"
SHADOW_GIT_DIR = ".git-codex"


class RepoRegistryError(RuntimeError):
    """Raised when an alias operation is rejected."""


@dataclass(frozen=True, slots=True)
class RepoDefinition:
    dir: Path
    branch: str = "main"
    remote: str = "origin"

    def to_dict(self) -> dict[str, str]:
        return {"dir": str(self.dir), "branch": self.branch, "remote": self.remote}


@dataclass(frozen=True, slots=True)
class RepoContext:
    name: str
    definition: RepoDefinition
    inputs_subdir: str = ".codex-inputs"

    @property
    def dir(self) -> Path:
        return self.definition.dir

    @property
    def branch(self) -> str:
        return self.definition.branch

    @property
    def remote(self) -> str:
        return self.definition.remote

    @property
    def git_dir(self) -> Path:
        return self.dir / ".git"

    @property
    def shadow_git_dir(self) -> Path:
        return self.dir / SHADOW_GIT_DIR

    @property
    def inputs_dir(self) -> Path:
        return (self.dir / self.inputs_subdir).resolve()

    @property
    def tracking_range(self) -> str:
        return f"{self.remote}/{self.branch}..{self.branch}"

    def describe(self) -> str:
        return f"{self.name}: {self.dir} ({self.remote}/{self.branch})"


def normalize_alias(name: str) -> str:
    return str(name or "").strip().casefold()


def has_git_marker(directory: Path) -> bool:
    return (directory / ".git").exists()


class RepoRegistry:
    def __init__(
        self,
        path: Path,
        default: RepoDefinition,
        sessions: SessionStore,
        *,
        inputs_subdir: str = ".codex-inputs",
    ) -> None:
        self.path = path
        self.default = default
        self.sessions = sessions
        self.inputs_subdir = inputs_subdir
        self._aliases: dict[str, RepoDefinition] = {}
        self._active: str | None = None

    @property
    def active_name(self) -> str:
        return self._active or DEFAULT_ALIAS

    def _context(self, name: str, definition: RepoDefinition) -> RepoContext:
        return RepoContext(name=name, definition=definition, inputs_subdir=self.inputs_subdir)

    def active(self) -> RepoContext:
        if self._active and self._active in self._aliases:
            return self._context(self._active, self._aliases[self._active])
        return self._context(DEFAULT_ALIAS, self.default)

    def resolve(self, name: str) -> RepoContext:
        key = normalize_alias(name)
        if key == DEFAULT_ALIAS:
            return self._context(DEFAULT_ALIAS, self.default)
        definition = self._aliases.get(key)
        if definition is None:
            raise RepoRegistryError(f"Unknown repo alias: {key}")
        return self._context(key, definition)

    def list_aliases(self) -> dict[str, RepoDefinition]:
        return {DEFAULT_ALIAS: self.default, **dict(sorted(self._aliases.items()))}

    def load(self) -> None:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._aliases, self._active = {}, None
            return
        try:
            self._aliases, self._active = self._parse(json.loads(raw.decode("utf-8")))
        except (json.JSONDecodeError, ValueError, TypeError) as exc:
            self._backup_corrupt()
            logger.error("Failed to load repo alias store. Starting with defaults: %s", exc)
            self._aliases, self._active = {}, None
            return
        if self._active is not None and self._active not in self._aliases:
            logger.warning("Active repo alias %r no longer exists, using default.", self._active)
            self._active = None

    @staticmethod
    def _parse(payload: Any) -> tuple[dict[str, RepoDefinition], str | None]:
        if not isinstance(payload, dict):
            raise ValueError("Alias store root must be an object.")
        raw_aliases = payload.get("aliases", {})
        if not isinstance(raw_aliases, dict):
            raise ValueError("Alias store 'aliases' must be an object.")
        aliases: dict[str, RepoDefinition] = {}
        for name, item in raw_aliases.items():
            if not isinstance(item, dict) or not isinstance(item.get("dir"), str):
                raise ValueError(f"Alias {name!r} must carry a dir.")
            key = normalize_alias(name)
            if key == DEFAULT_ALIAS or not key:
                continue
            aliases[key] = RepoDefinition(
                dir=Path(item["dir"]),
                branch=str(item.get("branch") or "main"),
                remote=str(item.get("remote") or "origin"),
            )
        active = payload.get("active")
        if active is not None and not isinstance(active, str):
            raise ValueError("Alias store 'active' must be a string or null.")
        active_key = normalize_alias(active) if active else None
        if active_key == DEFAULT_ALIAS:
            active_key = None
        return aliases, active_key

    def _backup_corrupt(self) -> None:
        backup_path = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}.json")
        try:
            shutil.copyfile(self.path, backup_path)
        except OSError:
            logger.exception("Failed to back up unreadable repo alias store.")
            return
        logger.error("Repo alias store was unreadable. Backed up original to: %s", backup_path)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "aliases": {name: item.to_dict() for name, item in self._aliases.items()},
            "active": self._active,
        }
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def add_alias(
        self,
        name: str,
        directory: str,
        branch: str | None = None,
        remote: str | None = None,
    ) -> RepoContext:
        key = normalize_alias(name)
        if not key:
            raise RepoRegistryError("Alias name must not be empty.")
        if key == DEFAULT_ALIAS:
            raise RepoRegistryError(f'"{DEFAULT_ALIAS}" is reserved for the configured repo.')
        if not str(directory or "").strip():
            raise RepoRegistryError("Repo path must not be empty.")
        repo_dir = Path(directory.strip()).expanduser().resolve()
        if not has_git_marker(repo_dir):
            raise RepoRegistryError(f"Not a git repo (no .git found): {repo_dir}")
        definition = RepoDefinition(
            dir=repo_dir,
            branch=(branch or "").strip() or self.default.branch,
            remote=(remote or "").strip() or self.default.remote,
        )
        self._aliases[key] = definition
        self.save()
        return self._context(key, definition)

    def switch_active(self, name: str) -> RepoContext:
        context = self.resolve(name)
        if not has_git_marker(context.dir):
            raise RepoRegistryError(f"Not a git repo (no .git found): {context.dir}")
        self._active = None if context.name == DEFAULT_ALIAS else context.name
        self.save()
        self._clear_sessions()
        return context

    def remove_alias(self, name: str) -> bool:
        """Remove an alias; returns True when the active repo fell back to default."""
        key = normalize_alias(name)
        if key == DEFAULT_ALIAS:
            raise RepoRegistryError(f'"{DEFAULT_ALIAS}" cannot be removed.')
        if key not in self._aliases:
            raise RepoRegistryError(f"Unknown repo alias: {key}")
        del self._aliases[key]
        was_active = self._active == key
        if was_active:
            self._active = None
        self.save()
        if was_active:
            self._clear_sessions()
        return was_active

    def _clear_sessions(self) -> None:
        self.sessions.clear_all()
        self.sessions.save()
