"""OpenExchangeRates client via httpx async.

The free plan only quotes against USD, so any pair is derived as a cross
rate from a single USD-based table: rate(A/B) = table[B] / table[A].
The JSON body is parsed with Decimal for every number; a rate never
passes through float.
"""

import json
from decimal import Decimal, InvalidOperation

import httpx

from fxcore.config import ProviderSettings
from fxcore.exceptions import FatalConfigError, TransientError, ValidationError
from fxcore.logging import get_logger
from fxcore.models import CurrencyPair, RateSnapshot
from fxcore.rates.provider import RateProvider

logger = get_logger(__name__)


class OpenExchangeRatesProvider(RateProvider):
    """Concrete rate provider backed by openexchangerates.org.

    Args:
        settings: Provider credentials and endpoint.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    NAME = "openexchangerates"

    def __init__(
        self,
        settings: ProviderSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    def ensure_configured(self) -> None:
        if not self._settings.app_id.get_secret_value():
            raise FatalConfigError("OXR_APP_ID is not configured")

    async def close(self) -> None:
        await self._client.aclose()

    async def get_rate(self, pair: CurrencyPair) -> RateSnapshot:
        table_base = self._settings.base_currency.upper()
        params = {
            "app_id": self._settings.app_id.get_secret_value(),
            "symbols": ",".join(sorted({pair.base, pair.quote} - {table_base})),
        }
        if table_base != "USD":
            params["base"] = table_base

        try:
            response = await self._client.get("/latest.json", params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"Rate request timed out for {pair}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Rate request failed for {pair}: {e}") from e

        if response.status_code >= 400:
            raise TransientError(
                f"Rate provider returned HTTP {response.status_code} for {pair}"
            )

        try:
            body = json.loads(response.text, parse_float=Decimal, parse_int=Decimal)
        except ValueError as e:
            raise TransientError(f"Malformed rate response for {pair}") from e

        if not isinstance(body, dict) or not isinstance(body.get("rates"), dict):
            raise TransientError(f"Rate response missing 'rates' for {pair}")

        rates = body["rates"]
        base_rate = self._lookup(rates, pair.base, table_base)
        quote_rate = self._lookup(rates, pair.quote, table_base)
        if base_rate <= 0 or quote_rate <= 0:
            raise TransientError(f"Non-positive rate in response for {pair}")

        as_of = body.get("timestamp")
        snapshot = RateSnapshot(
            pair=pair,
            rate=quote_rate / base_rate,
            as_of=float(as_of) if as_of is not None else 0.0,
        )
        logger.debug("rate_fetched", pair=str(pair), rate=snapshot.rate)
        return snapshot

    @staticmethod
    def _lookup(rates: dict, currency: str, table_base: str) -> Decimal:
        if currency == table_base and currency not in rates:
            return Decimal("1")
        if currency not in rates:
            raise ValidationError(f"Provider does not quote {currency}")
        try:
            return Decimal(rates[currency])
        except (InvalidOperation, TypeError) as e:
            raise TransientError(f"Unparseable rate for {currency}: {rates[currency]!r}") from e
