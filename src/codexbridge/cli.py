from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import click

from codexbridge.backends import CodexBackend, GitRunner
from codexbridge.bridge import Bridge
from codexbridge.config import BridgeConfig, ConfigError, load_config, save_config
from codexbridge.gate import ConcurrencyGate
from codexbridge.github import GitHubClient
from codexbridge.logs import configure_logging, log_backend_event
from codexbridge.state import RepoDefinition, RepoRegistry, SessionStore
from codexbridge.transport import TelegramTransport


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: BridgeConfig
    sessions: SessionStore
    registry: RepoRegistry
    bridge: Bridge


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> BridgeConfig:
    try:
        config = load_config(config_path)
        config.validate()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return config


def _build_stores(config: BridgeConfig) -> tuple[SessionStore, RepoRegistry]:
    sessions = SessionStore(
        config.session_path,
        history_limit=config.history.store_limit,
        content_limit=config.history.result_store_limit,
    )
    sessions.load()
    registry = RepoRegistry(
        config.alias_path,
        RepoDefinition(dir=config.repo_dir, branch=config.repo.branch, remote=config.repo.remote),
        sessions,
        inputs_subdir=config.repo.inputs_subdir,
    )
    registry.load()
    return sessions, registry


def _load_runtime(config_path: Path) -> Runtime:
    config = _load_config(config_path)
    sessions, registry = _build_stores(config)
    backend = CodexBackend(
        binary=config.task.binary,
        timeout_seconds=config.task.timeout_seconds,
        event_hook=log_backend_event,
    )
    github = GitHubClient(config.github.token, config.github.api_url)
    bridge = Bridge(
        config=config,
        sessions=sessions,
        registry=registry,
        gate=ConcurrencyGate(),
        backend=backend,
        git=GitRunner(),
        github=github,
    )
    return Runtime(
        config_path=config_path,
        config=config,
        sessions=sessions,
        registry=registry,
        bridge=bridge,
    )


@click.group()
def cli() -> None:
    """Telegram bridge for the Codex CLI."""


@cli.command("init")
@click.option("--config", "config_value", default="codexbridge.toml", show_default=True)
@click.option("--repo", "repo_value", default=None, help="Target git working tree.")
def init_command(config_value: str, repo_value: str | None) -> None:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path, env={})
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if repo_value:
        config.repo.dir = str(Path(repo_value).expanduser().resolve())
    config_path.parent.mkdir(parents=True, exist_ok=True)
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(f"Repo: {config.repo.dir or '(unset, set TARGET_REPO_DIR)'}")
    if not config.telegram.token:
        click.echo("Set TELEGRAM_BOT_TOKEN and TELEGRAM_ALLOWED_USER_ID before running.")


@cli.command("check")
@click.option("--config", "config_value", default="codexbridge.toml", show_default=True)
def check_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = _load_config(config_path)
    sessions, registry = _build_stores(config)
    active = registry.active()
    payload = {
        "config": str(config_path),
        "repo": {
            "active": active.name,
            "dir": str(active.dir),
            "branch": active.branch,
            "remote": active.remote,
            "aliases": sorted(registry.list_aliases()),
        },
        "stores": {
            "sessions": str(config.session_path),
            "aliases": str(config.alias_path),
            "chats": len(sessions),
        },
        "codex": {
            "binary": config.task.binary,
            "timeout_seconds": config.task.timeout_seconds,
        },
        "telegram_token": bool(config.telegram.token),
        "github_token": bool(config.github.token),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("run")
@click.option("--config", "config_value", default="codexbridge.toml", show_default=True)
def run_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    runtime = _load_runtime(config_path)
    configure_logging(runtime.config.log_level)
    runtime.config.repo_dir.joinpath(runtime.config.repo.inputs_subdir).mkdir(
        parents=True, exist_ok=True
    )
    click.echo(f"Bridge online for {runtime.registry.active().describe()} (pid {os.getpid()})")
    transport = TelegramTransport(
        runtime.bridge,
        token=runtime.config.telegram.token,
        allowed_user_id=runtime.config.telegram.allowed_user_id,
    )
    transport.run()
