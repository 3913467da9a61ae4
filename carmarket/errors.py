# carmarket/errors.py
"""Error taxonomy shared by the store, services and route layer."""


class MarketError(Exception):
    pass


class ValidationError(MarketError, ValueError):
    """Malformed or out-of-range input; `errors` holds per-field messages."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class InvalidTransitionError(ValidationError):
    pass


class NotFoundError(MarketError, LookupError):
    pass


class ForbiddenError(MarketError, PermissionError):
    pass


class TransientStoreError(MarketError):
    """Persistence I/O failure. Callers retry or surface it as a 5xx."""
