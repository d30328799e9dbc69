"""Tests for structured key=value log lines."""

import logging
from unittest.mock import patch

from coach_engine.core.logging import StructuredFormatter, get_logger, log_with_context


def _record(msg, **extra):
    record = logging.LogRecord("coach_engine.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_session_fields_and_quoting():
    line = StructuredFormatter().format(
        _record("Support engine stopped", session_id="sess-1", fields={"ticks": 4, "reason": "customer final"})
    )

    assert " level=INFO logger=coach_engine.test session_id=sess-1 " in line
    assert 'msg="Support engine stopped"' in line
    assert line.endswith('ticks=4 reason="customer final"')


def test_line_without_session_or_fields():
    line = StructuredFormatter().format(_record("ready"))

    assert "session_id" not in line
    assert line.endswith("logger=coach_engine.test msg=ready")


def test_log_with_context_passes_session_separately():
    logger = get_logger("coach_engine.test.context")
    with patch.object(logger, "log") as log:
        log_with_context(logger, logging.WARNING, "Stage advanced", session_id="sess-2", stage="Diagnosis")

    log.assert_called_once_with(
        logging.WARNING, "Stage advanced", extra={"fields": {"stage": "Diagnosis"}, "session_id": "sess-2"}
    )


def test_get_logger_configures_handler_once():
    first = get_logger("coach_engine.test.once")
    second = get_logger("coach_engine.test.once")

    assert first is second
    assert len(first.handlers) == 1
    assert isinstance(first.handlers[0].formatter, StructuredFormatter)
