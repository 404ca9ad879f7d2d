"""Shared helpers: errors, TTL cache, UTC datetime handling."""

from tradecal.utils.errors import (
    TradeCalError,
    DatabaseError,
    RecordNotFoundError,
    ValidationError,
    InvalidOutcomeError,
    ExternalServiceError,
    ValuationSourceError,
    CalibrationError,
    LockUnavailableError,
    ConfigurationError,
)

__all__ = [
    "TradeCalError",
    "DatabaseError",
    "RecordNotFoundError",
    "ValidationError",
    "InvalidOutcomeError",
    "ExternalServiceError",
    "ValuationSourceError",
    "CalibrationError",
    "LockUnavailableError",
    "ConfigurationError",
]
