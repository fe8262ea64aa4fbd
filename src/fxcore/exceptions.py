"""Custom exceptions for the monetary event-processing core.

Every component raises from this hierarchy so callers and the
ErrorObserver can classify failures without importing component modules.
"""


class FxCoreError(Exception):
    """Base exception for all fxcore errors."""


class ValidationError(FxCoreError):
    """Bad input (non-positive amount, unknown pair, malformed code). Never retried."""


class TransientError(FxCoreError):
    """Provider, network or transport failure (including timeouts). Retried later."""


class IdempotencyConflict(FxCoreError):
    """A reward for this referrer/referee pair already exists. Treated as success."""


class FatalConfigError(FxCoreError):
    """Required configuration (e.g. provider credentials) is missing at startup."""


class SubscriptionExpired(FxCoreError):
    """The push endpoint reported the subscription as gone (HTTP 404/410)."""


class StateConflict(FxCoreError):
    """A compare-and-swap write lost against a concurrent writer."""
