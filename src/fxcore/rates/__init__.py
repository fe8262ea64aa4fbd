"""FX rate sources -- provider interface and OpenExchangeRates client."""

from fxcore.rates.openexchange import OpenExchangeRatesProvider
from fxcore.rates.provider import RateProvider

__all__ = ["OpenExchangeRatesProvider", "RateProvider"]
