"""Settings validation."""

import pytest
from pydantic import ValidationError

from tradecal.config import Settings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.calibration_season == 2025
    assert s.observed_accept_rate == 0.85
    assert s.calibration_cache_ttl_seconds == 3600


def test_env_override(monkeypatch):
    monkeypatch.setenv("CALIBRATION_SEASON", "2026")
    monkeypatch.setenv("LOG_FORMAT", "JSON")
    s = Settings(_env_file=None)
    assert s.calibration_season == 2026
    assert s.log_format == "json"


@pytest.mark.parametrize("field, value", [("log_format", "xml"), ("observed_accept_rate", 1.0)])
def test_rejects_invalid(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})
