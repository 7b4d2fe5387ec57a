from __future__ import annotations

import json
import logging
import sys

from autocycle.logging_context import get_logging_context, with_cycle_context
from autocycle.logging_utils import JsonFormatter, setup_logging


def _record(msg: str, *args: object, exc_info=None, extra: dict | None = None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="autocycle.test",
        level=logging.ERROR if exc_info else logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("Cycle failed", exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "Cycle failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_structured_extra() -> None:
    rendered = JsonFormatter().format(_record("live_lock_claimed", extra={"lock_ttl_seconds": 900}))

    payload = json.loads(rendered)
    assert payload["lock_ttl_seconds"] == 900
    assert payload["run_id"] is None


def test_cycle_context_fields_are_attached_and_reset() -> None:
    formatter = JsonFormatter()

    with with_cycle_context("run-7", "live", "cycle-3"):
        payload = json.loads(formatter.format(_record("inside")))
        assert get_logging_context() == {"run_id": "run-7", "cycle_id": "cycle-3", "mode": "live"}

    assert payload["run_id"] == "run-7"
    assert payload["cycle_id"] == "cycle-3"
    assert payload["mode"] == "live"
    assert get_logging_context() == {}


def test_json_formatter_redacts_sensitive_extra_keys() -> None:
    rendered = JsonFormatter().format(
        _record("cycle_settings", extra={"confirm_text": "SUPER-SECRET-CONFIRM"})
    )

    assert "SUPER-SECRET-CONFIRM" not in rendered


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_writes_json_to_stderr() -> None:
    setup_logging("INFO")

    handler = logging.getLogger().handlers[-1]
    assert isinstance(handler.formatter, JsonFormatter)
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr


def test_setup_logging_defaults_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.INFO
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL
