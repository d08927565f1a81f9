# portfolio_engine/services/market_data/base.py
"""
Abstract interfaces for external market data collaborators.

Two contracts are consumed by the engine:
- MarketDataProvider: historical daily candles (OHLCV + currency)
- FxRateProvider: a map of quote currency → rate for one base currency

Both share the same retry behavior (tenacity exponential backoff on
transient errors), implemented once in RetryingProvider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TypeVar, Callable, Any

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from portfolio_engine.services.exceptions import (
    ProviderUnavailableError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# DATA CLASSES - PRICE DATA (OHLCV)
# =============================================================================

@dataclass(frozen=True)
class OHLCVData:
    """
    Single day's OHLCV price data.

    Attributes:
        date: Trading date (no time component)
        open: Opening price
        high: Highest price during the day
        low: Lowest price during the day
        close: Closing price (primary valuation price)
        volume: Trading volume
    """

    date: date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int | None = None

    def __post_init__(self) -> None:
        if self.close <= 0:
            raise ValueError(f"close price must be positive, got {self.close}")
        if self.high < self.low:
            raise ValueError(f"high ({self.high}) cannot be less than low ({self.low})")


@dataclass
class HistoricalPricesResult:
    """
    Result of fetching historical candles for one symbol.

    Attributes:
        symbol: The symbol requested
        currency: Currency code as reported by the provider. May be a
            minor-unit code such as "GBp"; the price resolver normalizes it.
        prices: Candles sorted by date (empty if none)
        from_date: Requested start date
        to_date: Requested end date
    """

    symbol: str
    currency: str | None = None
    prices: list[OHLCVData] = field(default_factory=list)
    from_date: date | None = None
    to_date: date | None = None

    @property
    def days_fetched(self) -> int:
        return len(self.prices)

    def candle_on(self, day: date) -> OHLCVData | None:
        for candle in self.prices:
            if candle.date == day:
                return candle
        return None


# =============================================================================
# RETRY BASE
# =============================================================================

class RetryingProvider(ABC):
    """
    Shared retry behavior for external providers.

    Subclasses override the retry configuration via class attributes:

        - MAX_RETRY_ATTEMPTS: Total attempts (default: 3)
        - RETRY_MIN_WAIT: Minimum wait in seconds (default: 1)
        - RETRY_MAX_WAIT: Maximum wait in seconds (default: 10)
        - RETRY_MULTIPLIER: Exponential multiplier (default: 1)

    Retryable Exceptions:
        - ProviderUnavailableError: Network issues, timeouts, server errors
        - RateLimitError: API rate limit exceeded

    Anything else (TickerNotFoundError included) fails on first attempt.
    """

    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: int = 1
    RETRY_MAX_WAIT: int = 10
    RETRY_MULTIPLIER: int = 1

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier used in logs, errors and breaker names."""
        pass

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            **kwargs: Any,
    ) -> T:
        """
        Execute a function with exponential backoff on transient failures.

        Raises:
            The last exception if all retries fail
        """

        @retry(
            stop=stop_after_attempt(self.MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.RETRY_MULTIPLIER,
                min=self.RETRY_MIN_WAIT,
                max=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type((ProviderUnavailableError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return func(*args, **kwargs)

        return _inner()


# =============================================================================
# ABSTRACT PROVIDERS
# =============================================================================

class MarketDataProvider(RetryingProvider):
    """
    Source of historical daily closes.

    Live quotes are not part of this contract.
    """

    @abstractmethod
    def get_historical_prices(
            self,
            symbol: str,
            start_date: date,
            end_date: date,
    ) -> HistoricalPricesResult:
        """
        Fetch daily candles for one symbol.

        Args:
            symbol: Provider symbol (e.g., "AAPL", "VOD.L", "^GSPC")
            start_date: Start date (inclusive)
            end_date: End date (inclusive)

        Returns:
            HistoricalPricesResult, possibly with no candles

        Raises:
            TickerNotFoundError: Symbol unknown to the provider
            ProviderUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass


class FxRateProvider(RetryingProvider):
    """Source of current cross rates."""

    @abstractmethod
    def get_rates(self, base: str, symbols: tuple[str, ...]) -> dict[str, Decimal]:
        """
        Fetch current rates for a base currency.

        Args:
            base: Base currency (e.g., "EUR")
            symbols: Quote currencies wanted (e.g., ("USD", "GBP"))

        Returns:
            Map of quote currency → units of quote per 1 base. Currencies the
            provider could not price are omitted.

        Raises:
            FXProviderError: Provider failed entirely
        """
        pass

    def get_historical_rates(
            self,
            base: str,
            quote: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        """
        Fetch a daily rate series (1 base = X quote).

        Default: provider has no history.
        """
        return {}
