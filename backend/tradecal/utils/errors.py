"""
Exception hierarchy for the calibration engine.

Every error carries a message plus a details dict so the admin API and job
stats can report it without parsing strings. Thin-data conditions are not
errors: calibration steps return a result with adjusted=False and a reason.
"""

from typing import Optional, Dict, Any


class TradeCalError(Exception):
    """Root of all calibration engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# Persistence

class DatabaseError(TradeCalError):
    """A calibration write or read against the store failed."""


class RecordNotFoundError(DatabaseError):
    """No calibration record exists for the requested season."""


# Input validation

class ValidationError(TradeCalError):
    """Caller supplied a value the engine cannot accept."""


class InvalidOutcomeError(ValidationError):
    """Outcome label is not one of ACCEPTED, REJECTED, EXPIRED, COUNTERED."""

    def __init__(self, outcome: Any, allowed: Optional[tuple] = None):
        super().__init__(
            f"Invalid outcome '{outcome}'",
            details={"outcome": outcome, "allowed": list(allowed or ())},
        )


# Upstream services

class ExternalServiceError(TradeCalError):
    """An upstream dependency could not be reached or answered badly."""


class ValuationSourceError(ExternalServiceError):
    """Valuation market source could not return a value distribution."""


# Job coordination

class CalibrationError(TradeCalError):
    """A calibration job could not run."""


class LockUnavailableError(CalibrationError):
    """Another run holds the calibration lease; the caller should skip."""

    def __init__(self, message: str, holder: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.holder = holder


class ConfigurationError(TradeCalError):
    """A required setting is missing or unusable."""
