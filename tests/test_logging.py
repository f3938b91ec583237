from __future__ import annotations

import logging
from pathlib import Path

from barrel_volume.logging import coerce_level, get_logger, set_level


def test_logger_is_configured_once():
    first = get_logger("barreldb-test-once")
    second = get_logger("barreldb-test-once")

    assert first is second
    assert len(first.handlers) == 1
    assert first.propagate is False


def test_log_file_receives_formatted_records(tmp_path: Path, monkeypatch):
    log_file = tmp_path / "barrel.log"
    monkeypatch.setenv("LOG_FILE", str(log_file))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    logger = get_logger("barreldb-test-file")
    logger.debug("merged %d rows", 3)
    for handler in logger.handlers:
        handler.flush()

    line = log_file.read_text(encoding="utf-8").strip()
    assert line.endswith("[barreldb-test-file] DEBUG: merged 3 rows")


def test_set_level_applies_to_loggers_and_handlers(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    logger = get_logger("barreldb-test-level")

    try:
        assert set_level("warn") == logging.WARNING
        assert logger.level == logging.WARNING
        assert all(h.level == logging.WARNING for h in logger.handlers)
    finally:
        set_level("INFO")


def test_coerce_level_defaults_to_info():
    assert coerce_level("nonsense") == logging.INFO
    assert coerce_level(None) == logging.INFO
    assert coerce_level(True) == logging.INFO
    assert coerce_level(logging.ERROR) == logging.ERROR
