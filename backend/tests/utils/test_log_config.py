"""Tests for log configuration helpers."""

from tradecal.log_config import SecretFilter, add_log_level, get_logger


def test_secret_filter_redacts_credentials():
    event = {"event": "settings loaded", "admin_key": "s3cret", "database_url": "postgresql://u:p@h/db", "season": 2025}

    result = SecretFilter()(None, "info", event)

    assert result["admin_key"] == "[REDACTED]"
    assert result["database_url"] == "[REDACTED]"
    assert result["season"] == 2025


def test_add_log_level():
    assert add_log_level(None, "warning", {})["level"] == "WARNING"


def test_get_logger_binds():
    log = get_logger("tradecal.test").bind(job="calibration")
    assert log is not None
