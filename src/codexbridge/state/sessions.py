from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

NO_CONTEXT = "No prior conversation context."


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionStoreShapeError(ValueError):
    """Raised while loading when the store file has an unexpected structure."""


@dataclass(slots=True)
class Turn:
    role: str
    content: str
    ts: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content, "ts": self.ts}


@dataclass(slots=True)
class PendingPush:
    description: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {"description": self.description, "createdAt": self.created_at}


@dataclass(slots=True)
class Session:
    history: list[Turn] = field(default_factory=list)
    pending_push: PendingPush | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": [turn.to_dict() for turn in self.history],
            "pendingPush": self.pending_push.to_dict() if self.pending_push else None,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> Session:
        if not isinstance(payload, dict):
            raise SessionStoreShapeError("Session entry must be an object.")
        raw_history = payload.get("history", [])
        if not isinstance(raw_history, list):
            raise SessionStoreShapeError("Session history must be a list.")
        history: list[Turn] = []
        for item in raw_history:
            if not isinstance(item, dict):
                raise SessionStoreShapeError("History entries must be objects.")
            role, content, ts = item.get("role"), item.get("content"), item.get("ts")
            if not all(isinstance(value, str) for value in (role, content, ts)):
                raise SessionStoreShapeError("History entries need string role, content and ts.")
            history.append(Turn(role=role, content=content, ts=ts))

        raw_pending = payload.get("pendingPush")
        pending: PendingPush | None = None
        if raw_pending is not None:
            if not isinstance(raw_pending, dict) or not isinstance(
                raw_pending.get("description"), str
            ):
                raise SessionStoreShapeError("pendingPush must be null or carry a description.")
            pending = PendingPush(
                description=raw_pending["description"],
                created_at=str(raw_pending.get("createdAt") or ""),
            )
        return cls(history=history, pending_push=pending)


class SessionStore:
    def __init__(self, path: Path, *, history_limit: int = 24, content_limit: int = 6000) -> None:
        self.path = path
        self.history_limit = history_limit
        self.content_limit = content_limit
        self._sessions: dict[str, Session] = {}

    def __contains__(self, chat_id: object) -> bool:
        return str(chat_id) in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def load(self) -> None:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._sessions = {}
            return
        try:
            parsed = json.loads(raw.decode("utf-8"))
            if not isinstance(parsed, dict):
                raise SessionStoreShapeError("Session store root must be an object.")
            self._sessions = {
                str(key): Session.from_dict(value) for key, value in parsed.items()
            }
        except (UnicodeDecodeError, json.JSONDecodeError, SessionStoreShapeError) as exc:
            self._backup_corrupt()
            logger.error("Failed to load session store. Starting with empty sessions: %s", exc)
            self._sessions = {}

    def _backup_corrupt(self) -> None:
        backup_path = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}.json")
        try:
            shutil.copyfile(self.path, backup_path)
        except OSError:
            logger.exception("Failed to back up unreadable session store.")
            return
        logger.error("Session store was unreadable. Backed up original to: %s", backup_path)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: session.to_dict() for key, session in self._sessions.items()}
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, chat_id: object) -> Session:
        key = str(chat_id)
        session = self._sessions.get(key)
        if session is None:
            session = Session()
            self._sessions[key] = session
        return session

    def peek(self, chat_id: object) -> Session | None:
        return self._sessions.get(str(chat_id))

    def reset(self, chat_id: object) -> Session:
        session = Session()
        self._sessions[str(chat_id)] = session
        return session

    def clear_all(self) -> None:
        self._sessions = {}

    def add_history(self, chat_id: object, role: str, content: object) -> Turn:
        session = self.get(chat_id)
        text = "" if content is None else str(content)
        turn = Turn(role=role, content=text[: self.content_limit], ts=utcnow_iso())
        session.history.append(turn)
        if len(session.history) > self.history_limit:
            del session.history[: len(session.history) - self.history_limit]
        return turn

    def build_context(self, chat_id: object, turns: int) -> str:
        history = self.get(chat_id).history
        recent = history[-turns:] if turns > 0 else []
        if not recent:
            return NO_CONTEXT
        return "\n\n".join(
            f"[{index}] {turn.role.upper()} ({turn.ts}):\n{turn.content}"
            for index, turn in enumerate(recent, start=1)
        )
