"""
Test logging setup.
"""

import json
import logging

import pytest
import structlog

from mdw_sync.core.config import settings
from mdw_sync.core.logging import get_logger, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def read_lines(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [line for line in path.read_text().splitlines() if line]


def test_json_lines_for_structlog_and_stdlib_records(tmp_path, monkeypatch, restore_logging):
    monkeypatch.setattr(settings, "log_format", "json")
    monkeypatch.setattr(settings, "log_level", "INFO")
    log_file = tmp_path / "logs" / "sync.log"

    setup_logging(str(log_file))
    get_logger("mdw_sync.test").info("Key block synced", height=42)
    logging.getLogger("alembic.runtime").warning("Running upgrade %s", "0001")

    events = [json.loads(line) for line in read_lines(log_file)]
    assert events[0]["event"] == "Key block synced"
    assert events[0]["height"] == 42
    assert events[0]["level"] == "info"
    assert events[0]["logger"] == "mdw_sync.test"
    assert events[1]["event"] == "Running upgrade 0001"
    assert events[1]["level"] == "warning"


def test_level_and_quiet_loggers_apply(tmp_path, monkeypatch, restore_logging):
    monkeypatch.setattr(settings, "log_format", "console")
    monkeypatch.setattr(settings, "log_level", "WARNING")
    log_file = tmp_path / "sync.log"

    setup_logging(str(log_file))
    get_logger("mdw_sync.test").info("Hidden")
    get_logger("mdw_sync.test").error("Shown", plugin="token")

    lines = read_lines(log_file)
    assert len(lines) == 1
    assert "Shown" in lines[0]
    assert "plugin=token" in lines[0]
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
