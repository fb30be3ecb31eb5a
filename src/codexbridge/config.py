from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class ConfigError(RuntimeError):
    """Raised when required settings are missing or invalid."""


@dataclass(slots=True)
class TelegramConfig:
    token: str = ""
    allowed_user_id: int = 0
    max_message: int = 3900


@dataclass(slots=True)
class RepoConfig:
    dir: str = ""
    branch: str = "main"
    remote: str = "origin"
    inputs_subdir: str = ".codex-inputs"


@dataclass(slots=True)
class TaskConfig:
    binary: str = "codex"
    default_sandbox: str = "workspace-write"
    push_sandbox: str = "workspace-write"
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class HistoryConfig:
    turns: int = 8
    store_limit: int = 24
    result_store_limit: int = 6000


@dataclass(slots=True)
class StorageConfig:
    session_path: str = "data/sessions.json"
    alias_path: str = "data/repos.json"


@dataclass(slots=True)
class GitHubConfig:
    token: str = ""
    api_url: str = "https://api.github.com"
    pr_base: str = "main"


@dataclass(slots=True)
class BridgeConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    repo: RepoConfig = field(default_factory=RepoConfig)
    task: TaskConfig = field(default_factory=TaskConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    log_level: str = "INFO"
    base_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls) -> BridgeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict, base_dir: Path | None = None) -> BridgeConfig:
        try:
            return cls(
                telegram=TelegramConfig(**data.get("telegram", {})),
                repo=RepoConfig(**data.get("repo", {})),
                task=TaskConfig(**data.get("task", {})),
                history=HistoryConfig(**data.get("history", {})),
                storage=StorageConfig(**data.get("storage", {})),
                github=GitHubConfig(**data.get("github", {})),
                log_level=str(data.get("log_level", "INFO")),
                base_dir=base_dir or Path.cwd(),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "log_level": self.log_level,
            "telegram": {
                "token": self.telegram.token,
                "allowed_user_id": self.telegram.allowed_user_id,
                "max_message": self.telegram.max_message,
            },
            "repo": {
                "dir": self.repo.dir,
                "branch": self.repo.branch,
                "remote": self.repo.remote,
                "inputs_subdir": self.repo.inputs_subdir,
            },
            "task": {
                "binary": self.task.binary,
                "default_sandbox": self.task.default_sandbox,
                "push_sandbox": self.task.push_sandbox,
                "timeout_seconds": self.task.timeout_seconds,
            },
            "history": {
                "turns": self.history.turns,
                "store_limit": self.history.store_limit,
                "result_store_limit": self.history.result_store_limit,
            },
            "storage": {
                "session_path": self.storage.session_path,
                "alias_path": self.storage.alias_path,
            },
            "github": {
                "token": self.github.token,
                "api_url": self.github.api_url,
                "pr_base": self.github.pr_base,
            },
        }

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    @property
    def repo_dir(self) -> Path:
        return self._resolve(self.repo.dir)

    @property
    def session_path(self) -> Path:
        return self._resolve(self.storage.session_path)

    @property
    def alias_path(self) -> Path:
        return self._resolve(self.storage.alias_path)

    def validate(self) -> None:
        if not self.telegram.token.strip():
            raise ConfigError("Missing required setting: TELEGRAM_BOT_TOKEN")
        if self.telegram.allowed_user_id <= 0:
            raise ConfigError("Missing required setting: TELEGRAM_ALLOWED_USER_ID")
        if not self.repo.dir.strip():
            raise ConfigError("Missing required setting: TARGET_REPO_DIR")
        if not (self.repo_dir / ".git").exists():
            raise ConfigError(f"TARGET_REPO_DIR does not look like a git repo: {self.repo_dir}")
        for name, value in (
            ("TELEGRAM_MAX_MESSAGE", self.telegram.max_message),
            ("HISTORY_TURNS", self.history.turns),
            ("HISTORY_STORE_LIMIT", self.history.store_limit),
            ("RESULT_STORE_LIMIT", self.history.result_store_limit),
        ):
            if value <= 0:
                raise ConfigError(f"Setting must be a positive number: {name}")
        if self.telegram.max_message <= 20:
            raise ConfigError("TELEGRAM_MAX_MESSAGE must leave room for message overhead")
        if self.task.timeout_seconds <= 0:
            raise ConfigError("Setting must be a positive number: CODEX_TIMEOUT_MS")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(
                "LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )


def _positive_int(env: Mapping[str, str], key: str) -> int | None:
    raw = str(env.get(key, "")).strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Environment variable must be a positive number: {key}") from exc
    if value <= 0:
        raise ConfigError(f"Environment variable must be a positive number: {key}")
    return value


def _string(env: Mapping[str, str], key: str) -> str | None:
    raw = str(env.get(key, "")).strip()
    return raw or None


def apply_env(config: BridgeConfig, env: Mapping[str, str]) -> BridgeConfig:
    strings = {
        "TELEGRAM_BOT_TOKEN": (config.telegram, "token"),
        "CODEX_BIN": (config.task, "binary"),
        "CODEX_DEFAULT_SANDBOX": (config.task, "default_sandbox"),
        "CODEX_PUSH_SANDBOX": (config.task, "push_sandbox"),
        "TARGET_REPO_DIR": (config.repo, "dir"),
        "TARGET_REPO_BRANCH": (config.repo, "branch"),
        "TARGET_REPO_REMOTE": (config.repo, "remote"),
        "BOT_INPUTS_SUBDIR": (config.repo, "inputs_subdir"),
        "SESSION_STORE_PATH": (config.storage, "session_path"),
        "REPO_ALIAS_STORE_PATH": (config.storage, "alias_path"),
        "GITHUB_TOKEN": (config.github, "token"),
        "GITHUB_API_URL": (config.github, "api_url"),
        "GITHUB_PR_BASE": (config.github, "pr_base"),
    }
    for key, (section, attr) in strings.items():
        value = _string(env, key)
        if value is not None:
            setattr(section, attr, value)

    numbers = {
        "TELEGRAM_ALLOWED_USER_ID": (config.telegram, "allowed_user_id"),
        "TELEGRAM_MAX_MESSAGE": (config.telegram, "max_message"),
        "HISTORY_TURNS": (config.history, "turns"),
        "HISTORY_STORE_LIMIT": (config.history, "store_limit"),
        "RESULT_STORE_LIMIT": (config.history, "result_store_limit"),
    }
    for key, (section, attr) in numbers.items():
        value = _positive_int(env, key)
        if value is not None:
            setattr(section, attr, value)

    timeout_ms = _positive_int(env, "CODEX_TIMEOUT_MS")
    if timeout_ms is not None:
        config.task.timeout_seconds = timeout_ms / 1000

    log_level = _string(env, "LOG_LEVEL")
    if log_level is not None:
        config.log_level = log_level.upper()
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BridgeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = [f"log_level = {_toml_value(data['log_level'])}", ""]
    section_order = ["telegram", "repo", "task", "history", "storage", "github"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, env: Mapping[str, str] | None = None) -> BridgeConfig:
    base_dir = path.resolve().parent
    if path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid config file {path}: {exc}") from exc
        config = BridgeConfig.from_dict(data, base_dir=base_dir)
    else:
        config = BridgeConfig.default()
        config.base_dir = base_dir
    return apply_env(config, os.environ if env is None else env)


def save_config(path: Path, config: BridgeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
