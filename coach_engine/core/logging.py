"""Key=value logging for the support coach engine.

Engine lines are keyed by session, so ``session_id`` is rendered ahead of the
message whenever it is present:

    ts="2026-01-05 10:12:01,204" level=INFO logger=coach_engine.core.support_engine
    session_id=sess-1 msg="Support engine stopped" ticks=4 avg_latency_ms=812
"""

import json
import logging
import sys
from typing import Any

LEVEL_BY_ENV = {"dev": logging.DEBUG, "test": logging.DEBUG}


def _render(value: Any) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, default=str)
    if not value or any(ch.isspace() or ch in '="' for ch in value):
        return json.dumps(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Renders a record as one line of key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
        }
        session_id = getattr(record, "session_id", None)
        if session_id is not None:
            fields["session_id"] = session_id
        fields["msg"] = record.getMessage()
        fields.update(getattr(record, "fields", {}))
        if record.exc_info:
            fields["exc"] = self.formatException(record.exc_info)

        return " ".join(f"{key}={_render(value)}" for key, value in fields.items())


def _level_for_env() -> int:
    try:
        from coach_engine.core.config import get_settings

        return LEVEL_BY_ENV.get(get_settings().COACH_ENV, logging.INFO)
    except Exception:
        return logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Logger writing structured lines to stdout, configured once per name."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_for_env())
    return logger


def log_with_context(
    logger: logging.Logger, level: int, msg: str, session_id: str | None = None, **fields: Any
) -> None:
    """Log ``msg`` with a session id and any extra key=value fields."""
    extra: dict[str, Any] = {"fields": fields}
    if session_id is not None:
        extra["session_id"] = session_id
    logger.log(level, msg, extra=extra)
