from __future__ import annotations


class RoguemindError(Exception):
    pass


class OracleError(RoguemindError):
    pass


class ConfigurationError(OracleError):
    """The oracle cannot be reached because credentials or endpoint are missing."""


class RateLimitExceeded(OracleError):
    """Local per-minute or per-day request ceiling reached."""


class TransientNetworkError(OracleError):
    """Timeout, 5xx or 429 from the oracle endpoint."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResponseParseError(OracleError):
    """The oracle answered, but nothing usable could be extracted."""
