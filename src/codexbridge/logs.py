from __future__ import annotations

import logging
from typing import Any

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "telegram.ext.Updater")

backend_logger = logging.getLogger("codexbridge.backends.events")


def configure_logging(level: str) -> None:
    """Configure root logging for the bridge process."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    details = {key: value for key, value in event.items() if key != "event"}
    if name == "codex_cli_timeout":
        backend_logger.warning("%s %s", name, details)
    elif name == "codex_cli_exit" and event.get("exit_code") not in (0, None):
        backend_logger.warning("%s %s", name, details)
    else:
        backend_logger.info("%s %s", name, details)
