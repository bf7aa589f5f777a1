from __future__ import annotations

import logging
import os
from typing import Any

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CONFIGURED = False


def configure_logging(level: str | int | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved: str | int = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=resolved, format=_DEFAULT_FORMAT)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def _format_field(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text) or "=" in text:
        return repr(text)
    return text


class EventLogger:
    """Structured pipeline events written as ``event key=value`` log records.

    Emitted events are also kept in ``events`` so callers can count what happened
    during a run without parsing log output.
    """

    def __init__(self, name: str = "trade_journal.events", *, keep: int = 1000) -> None:
        self._logger = get_logger(name)
        self._keep = keep
        self.events: list[dict[str, Any]] = []

    def emit(self, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
        record = {"event": event, **fields}
        self.events.append(record)
        if len(self.events) > self._keep:
            del self.events[: len(self.events) - self._keep]
        details = " ".join(f"{key}={_format_field(value)}" for key, value in sorted(fields.items()))
        self._logger.log(level, "%s %s", event, details)

    def count(self, event: str) -> int:
        return sum(1 for record in self.events if record["event"] == event)
