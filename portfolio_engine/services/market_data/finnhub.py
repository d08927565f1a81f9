# portfolio_engine/services/market_data/finnhub.py
"""
Finnhub forex rates provider.

Primary (keyed, budgeted) source of EUR cross rates. Uses httpx for the
HTTP call to the forex/rates endpoint:

    GET https://finnhub.io/api/v1/forex/rates?base=EUR&token=KEY
    → {"base": "EUR", "quote": {"USD": 1.0842, "GBP": 0.8571, ...}}
"""

import logging
from decimal import Decimal, InvalidOperation

import httpx

from portfolio_engine.services.exceptions import (
    FXProviderError,
    ProviderUnavailableError,
    RateLimitError,
)
from portfolio_engine.services.market_data.base import FxRateProvider

logger = logging.getLogger(__name__)


FINNHUB_FOREX_RATES_URL = "https://finnhub.io/api/v1/forex/rates"


class FinnhubFxProvider(FxRateProvider):
    """
    Finnhub implementation of FxRateProvider.

    Retries on 429 and 5xx responses (via RetryingProvider); any other
    failure is an FXProviderError and the FX service moves on to the next
    provider in its chain.
    """

    def __init__(self, api_key: str, timeout: float = 10, client: httpx.Client | None = None) -> None:
        if not api_key:
            raise ValueError("Finnhub API key is required")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client
        logger.info(f"FinnhubFxProvider initialized (timeout={timeout}s)")

    @property
    def name(self) -> str:
        return "finnhub"

    def get_rates(self, base: str, symbols: tuple[str, ...]) -> dict[str, Decimal]:
        """
        Fetch current rates for `base` and keep the requested symbols.

        Raises:
            FXProviderError: On any non-retryable failure or empty payload
        """
        try:
            payload = self._execute_with_retry(self._fetch_rates, base.upper())
        except (ProviderUnavailableError, RateLimitError) as e:
            raise FXProviderError(self.name, str(e)) from e

        quotes = payload.get("quote") or payload.get("rates") or {}
        rates: dict[str, Decimal] = {}
        for symbol in symbols:
            raw = quotes.get(symbol.upper())
            if raw is None:
                continue
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                logger.warning(f"Finnhub returned non-numeric rate for {symbol}: {raw!r}")
                continue
            if value > 0:
                rates[symbol.upper()] = value

        if not rates:
            raise FXProviderError(self.name, f"no rates for {', '.join(symbols)} in response")

        return rates

    def _fetch_rates(self, base: str) -> dict:
        params = {"base": base, "token": self._api_key}

        try:
            if self._client is not None:
                response = self._client.get(FINNHUB_FOREX_RATES_URL, params=params, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.get(FINNHUB_FOREX_RATES_URL, params=params)
        except httpx.RequestError as e:
            raise ProviderUnavailableError(self.name, f"Network error: {e}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(self.name, int(retry_after) if retry_after and retry_after.isdigit() else None)

        if response.status_code >= 500:
            raise ProviderUnavailableError(self.name, f"HTTP {response.status_code}")

        if response.status_code != 200:
            raise FXProviderError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise FXProviderError(self.name, f"Invalid JSON: {e}")
