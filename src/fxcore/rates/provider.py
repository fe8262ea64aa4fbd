"""Abstract FX rate provider interface.

The monitor and the referral engine depend only on this interface,
keeping provider-specific details isolated in concrete implementations.
"""

from abc import ABC, abstractmethod

from fxcore.models import CurrencyPair, RateSnapshot


class RateProvider(ABC):
    """Abstract base class for exchange-rate sources."""

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise FatalConfigError if credentials are missing."""
        ...

    @abstractmethod
    async def get_rate(self, pair: CurrencyPair) -> RateSnapshot:
        """Return the current rate for pair.

        Raises TransientError on network failure, timeout or a malformed
        response, and ValidationError when the provider does not quote
        one of the currencies.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...
