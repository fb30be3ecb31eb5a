from codexbridge.state.registry import RepoContext, RepoDefinition, RepoRegistry
from codexbridge.state.sessions import PendingPush, Session, SessionStore, Turn

__all__ = [
    "PendingPush",
    "RepoContext",
    "RepoDefinition",
    "RepoRegistry",
    "Session",
    "SessionStore",
    "Turn",
]
