"""Tests for settings and logging setup."""

import logging

from agentless.core.config import Settings
from agentless.core.logging_handler import (
    get_context_filter,
    get_file_log_handler,
    reset_logging,
    set_session_context,
    setup_logging,
)


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.SESSION_BASE_PATH == "/tmp/agentless"
    assert settings.TOKEN_HELPER_BINARY == "dd"
    assert settings.REMOTE_CLONE_ENABLED is True


def test_environment_override(monkeypatch):
    monkeypatch.setenv("SESSION_BASE_PATH", "/var/lib/agentless")
    monkeypatch.setenv("log_level", " debug ")

    settings = Settings(_env_file=None)

    assert settings.SESSION_BASE_PATH == "/var/lib/agentless"
    assert settings.LOG_LEVEL == "DEBUG"


def test_session_context_filter():
    set_session_context("h_v_a", "a")
    record = logging.LogRecord("agentless", logging.INFO, __file__, 1, "message", None, None)

    assert get_context_filter().filter(record)
    assert record.session_id == "h_v_a"
    assert record.asset_key == "a"
    set_session_context("-", "-")


def test_setup_logging_writes_file(tmp_path):
    logger = setup_logging("INFO", log_dir=str(tmp_path), max_bytes=1024, backup_count=1)
    logger.info("hello from the proxy")

    for handler in logger.handlers:
        handler.flush()
    assert "hello from the proxy" in (tmp_path / "agentless.log").read_text()


def test_setup_logging_follows_new_log_dir(tmp_path):
    """A later setup_logging call with another directory writes there."""
    first, second = tmp_path / "first", tmp_path / "second"
    setup_logging("INFO", log_dir=str(first))
    logger = setup_logging("INFO", log_dir=str(second))
    logger.info("written to the second directory")

    handler = get_file_log_handler(str(second))
    handler.flush()
    assert handler in logger.handlers
    assert sum(isinstance(h, logging.FileHandler) for h in logger.handlers) == 1
    assert "written to the second directory" in (second / "agentless.log").read_text()


def test_setup_logging_after_reset_uses_current_stderr(capsys):
    """Handlers from an earlier setup are dropped, so logging goes to the live stderr."""
    setup_logging("INFO")
    reset_logging()
    assert logging.getLogger("agentless").handlers == []

    setup_logging("INFO").info("after reset")

    assert "after reset" in capsys.readouterr().err
