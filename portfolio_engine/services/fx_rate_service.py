# portfolio_engine/services/fx_rate_service.py
"""
FX Rate Service: EUR cross rates and historical exchange rates.

This service handles:
- Current EUR cross rates via a provider fallback chain that never throws
- Fetching and storing historical FX series in the exchange_rates table
- Point-in-time currency → EUR rates for price resolution

=============================================================================
FX RATE CONVENTIONS
=============================================================================

Stored rates (exchange_rates table) use the Yahoo convention:

    rate = "1 base_currency = X quote_currency"
    base=USD, quote=EUR, rate=0.92  →  1 USD = 0.92 EUR

Cross-rate maps returned by get_eur_cross_rates() are EUR multipliers:

    {"EUR": 1, "USD": 0.92, "GBP": 0.86}  →  value_eur = value_ccy × map[ccy]

Providers quote EUR as base ("1 EUR = 1.087 USD"), so their answers are
inverted before landing in the map.

=============================================================================
FALLBACK CHAIN (get_eur_cross_rates)
=============================================================================

    1. Keyed provider (Finnhub), if configured
    2. Quote-based provider (Yahoo EURUSD=X / EURGBP=X)
    3. Static last-known defaults (constants.DEFAULT_EUR_CROSS_RATES)

Each provider call goes through its own circuit breaker. The first provider
that prices at least one currency wins; currencies it could not price keep
their default.

Usage:
    service = FXRateService(providers=[finnhub, yahoo], history_provider=yahoo)

    rates = service.get_eur_cross_rates()          # never raises
    multiplier = service.rate_to_eur(db, "USD", date(2024, 3, 1))
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, and_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from portfolio_engine.models import ExchangeRate
from portfolio_engine.services.circuit_breaker import CircuitBreakerOpen, get_breaker
from portfolio_engine.services.constants import (
    CROSS_RATE_CURRENCIES,
    DEFAULT_EUR_CROSS_RATES,
    FX_FALLBACK_DAYS,
    SHARE_PRECISION,
)
from portfolio_engine.services.exceptions import (
    FXProviderError,
    FXRateError,
    FXRateNotFoundError,
    FxUnavailableError,
    MarketDataError,
)
from portfolio_engine.services.market_data.base import FxRateProvider
from portfolio_engine.utils.date_utils import get_business_days

logger = logging.getLogger(__name__)

EUR = "EUR"


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass
class FXSyncResult:
    """Result of an FX rate sync operation."""

    base_currency: str
    quote_currency: str
    start_date: date
    end_date: date
    rates_fetched: int = 0
    rates_stored: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class FXRateResult:
    """Result of a stored FX rate lookup."""

    base_currency: str
    quote_currency: str
    date: date
    rate: Decimal
    is_exact_match: bool = True  # False if fallback was used
    actual_date: date | None = None  # The date the rate is actually from

    def __post_init__(self):
        if self.actual_date is None:
            self.actual_date = self.date


# =============================================================================
# FX RATE SERVICE
# =============================================================================

class FXRateService:
    """
    Service for EUR cross rates and stored historical exchange rates.

    Attributes:
        _providers: Ordered fallback chain for current cross rates
        _history_provider: Provider of daily FX series (optional)
        _max_fallback_days: Maximum days to look back for a stored rate
    """

    MAX_FALLBACK_DAYS: int = FX_FALLBACK_DAYS

    def __init__(
            self,
            providers: list[FxRateProvider] | None = None,
            history_provider: FxRateProvider | None = None,
            max_fallback_days: int | None = None,
            defaults: dict[str, Decimal] | None = None,
    ) -> None:
        self._providers = list(providers or [])
        self._history_provider = history_provider
        self._max_fallback_days = max_fallback_days or self.MAX_FALLBACK_DAYS
        self._defaults = dict(defaults or DEFAULT_EUR_CROSS_RATES)
        logger.info(
            f"FXRateService initialized (providers={[p.name for p in self._providers]}, "
            f"history={self._history_provider.name if self._history_provider else None}, "
            f"max_fallback_days={self._max_fallback_days})"
        )

    # =========================================================================
    # CURRENT CROSS RATES
    # =========================================================================

    def get_eur_cross_rates(self) -> dict[str, Decimal]:
        """
        EUR multipliers for every supported currency.

        Never raises: when every provider fails the static defaults are
        returned. Always returns a fresh dict.
        """
        for provider in self._providers:
            try:
                fetched = self._fetch_cross_rates(provider)
            except (FxUnavailableError, CircuitBreakerOpen) as e:
                logger.warning(f"FX provider {provider.name} failed, trying next: {e}")
                continue
            except Exception as e:
                logger.error(f"Unexpected error from FX provider {provider.name}: {e}")
                continue

            rates = dict(self._defaults)
            rates.update(fetched)
            rates[EUR] = Decimal("1")
            logger.debug(f"EUR cross rates from {provider.name}: {rates}")
            return rates

        logger.warning("All FX providers failed, using static default cross rates")
        return dict(self._defaults)

    def _fetch_cross_rates(self, provider: FxRateProvider) -> dict[str, Decimal]:
        """
        Ask one provider for EUR-based quotes and invert them.

        Raises:
            FxUnavailableError: Provider failed or priced nothing usable
            CircuitBreakerOpen: Provider is currently tripped
        """
        breaker = get_breaker(f"fx-{provider.name}")

        try:
            with breaker:
                quotes = provider.get_rates(EUR, CROSS_RATE_CURRENCIES)
        except (FXRateError, MarketDataError) as e:
            raise FxUnavailableError(provider.name, str(e)) from e

        inverted: dict[str, Decimal] = {}
        for currency, quote in quotes.items():
            if currency == EUR or quote is None or quote <= 0:
                continue
            inverted[currency] = self.invert_rate(quote)

        if not inverted:
            raise FxUnavailableError(provider.name, "no usable rates")

        return inverted

    # =========================================================================
    # POINT-IN-TIME RATES
    # =========================================================================

    def rate_to_eur(
            self,
            db: Session,
            currency: str,
            on_date: date,
            cross_rates: dict[str, Decimal] | None = None,
    ) -> Decimal:
        """
        Multiplier converting one unit of `currency` to EUR on `on_date`.

        Prefers a stored historical rate (with fallback window); otherwise
        uses the cross-rate map (fetched if not supplied). Unknown
        currencies resolve to 1 with a warning. Never raises.
        """
        currency = currency.upper().strip()
        if currency == EUR:
            return Decimal("1")

        stored = self.get_rate_or_none(db, currency, EUR, on_date)
        if stored is not None:
            return stored.rate

        rates = cross_rates if cross_rates is not None else self.get_eur_cross_rates()
        rate = rates.get(currency)
        if rate is None:
            logger.warning(f"No EUR rate for {currency} on {on_date}, assuming 1")
            return Decimal("1")
        return rate

    # =========================================================================
    # STORED HISTORICAL RATES
    # =========================================================================

    def sync_rates(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            start_date: date,
            end_date: date,
            force: bool = False,
    ) -> FXSyncResult:
        """
        Fetch and store a daily FX series for a currency pair.

        Only missing business days are fetched unless `force` is set.
        Provider failures are reported in the result, not raised.
        """
        base = base_currency.upper().strip()
        quote = quote_currency.upper().strip()

        result = FXSyncResult(
            base_currency=base,
            quote_currency=quote,
            start_date=start_date,
            end_date=end_date,
        )

        if base == quote or self._history_provider is None:
            return result

        all_dates = get_business_days(start_date, end_date)
        if force:
            dates_to_fetch = all_dates
        else:
            existing_dates = self._get_existing_dates(db, base, quote, start_date, end_date)
            dates_to_fetch = [d for d in all_dates if d not in existing_dates]

        if not dates_to_fetch:
            logger.debug(f"No missing dates for {base}/{quote}")
            return result

        logger.info(f"Syncing FX rates: {base}/{quote} from {min(dates_to_fetch)} to {max(dates_to_fetch)}")

        try:
            rates = self._fetch_history(base, quote, min(dates_to_fetch), max(dates_to_fetch))
        except FXProviderError as e:
            result.errors.append(str(e))
            logger.error(f"Provider error: {e}")
            return result

        result.rates_fetched = len(rates)
        if not rates:
            result.errors.append(f"No rates returned for {base}/{quote}")
            return result

        result.rates_stored = self._upsert_rates(db, base, quote, rates)

        logger.info(
            f"Sync complete: {base}/{quote} - "
            f"fetched={result.rates_fetched}, stored={result.rates_stored}"
        )
        return result

    def get_rate(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            target_date: date,
            allow_fallback: bool = True,
    ) -> FXRateResult:
        """
        Stored exchange rate for a specific date.

        Raises:
            FXRateNotFoundError: If no rate found (and no fallback available)
        """
        base = base_currency.upper().strip()
        quote = quote_currency.upper().strip()

        if base == quote:
            return FXRateResult(base, quote, target_date, Decimal("1"))

        rate_record = self._get_exact_rate(db, base, quote, target_date)
        if rate_record:
            return FXRateResult(
                base_currency=base,
                quote_currency=quote,
                date=target_date,
                rate=rate_record.rate,
                actual_date=self._extract_date(rate_record.date),
            )

        if allow_fallback:
            rate_record = self._get_fallback_rate(db, base, quote, target_date)
            if rate_record:
                actual_date = self._extract_date(rate_record.date)
                logger.debug(
                    f"Using fallback rate for {base}/{quote} on {target_date}: "
                    f"actual date = {actual_date}"
                )
                return FXRateResult(
                    base_currency=base,
                    quote_currency=quote,
                    date=target_date,
                    rate=rate_record.rate,
                    is_exact_match=False,
                    actual_date=actual_date,
                )

        raise FXRateNotFoundError(base, quote, target_date)

    def get_rate_or_none(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            target_date: date,
            allow_fallback: bool = True,
    ) -> FXRateResult | None:
        """Same as get_rate() but returns None instead of raising."""
        try:
            return self.get_rate(db, base_currency, quote_currency, target_date, allow_fallback)
        except FXRateNotFoundError:
            return None

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _fetch_history(
            self,
            base_currency: str,
            quote_currency: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        """
        Raises:
            FXProviderError: If the history provider fails
        """
        provider = self._history_provider
        breaker = get_breaker(f"fx-history-{provider.name}")

        try:
            with breaker:
                return provider.get_historical_rates(base_currency, quote_currency, start_date, end_date)
        except CircuitBreakerOpen as e:
            raise FXProviderError(provider.name, str(e)) from e
        except FXProviderError:
            raise
        except Exception as e:
            logger.error(f"Provider error for {base_currency}/{quote_currency}: {e}")
            raise FXProviderError(
                provider=provider.name,
                reason=f"Failed to fetch {base_currency}/{quote_currency}: {e}"
            ) from e

    def _get_existing_dates(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            start_date: date,
            end_date: date,
    ) -> set[date]:
        query = (
            select(ExchangeRate.date)
            .where(
                and_(
                    ExchangeRate.base_currency == base_currency,
                    ExchangeRate.quote_currency == quote_currency,
                    ExchangeRate.date >= start_date,
                    ExchangeRate.date <= end_date,
                )
            )
        )
        return {self._extract_date(dt) for dt in db.scalars(query).all()}

    def _get_exact_rate(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            target_date: date,
    ) -> ExchangeRate | None:
        query = (
            select(ExchangeRate)
            .where(
                and_(
                    ExchangeRate.base_currency == base_currency,
                    ExchangeRate.quote_currency == quote_currency,
                    ExchangeRate.date == target_date,
                )
            )
        )
        return db.scalar(query)

    def _get_fallback_rate(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            target_date: date,
    ) -> ExchangeRate | None:
        """Most recent stored rate before target_date within the fallback window."""
        min_date = target_date - timedelta(days=self._max_fallback_days)

        query = (
            select(ExchangeRate)
            .where(
                and_(
                    ExchangeRate.base_currency == base_currency,
                    ExchangeRate.quote_currency == quote_currency,
                    ExchangeRate.date >= min_date,
                    ExchangeRate.date < target_date,
                )
            )
            .order_by(ExchangeRate.date.desc())
            .limit(1)
        )
        return db.scalar(query)

    def _upsert_rates(
            self,
            db: Session,
            base_currency: str,
            quote_currency: str,
            rates: dict[date, Decimal],
    ) -> int:
        """
        Insert or update rates using ON CONFLICT on the pair/date constraint.

        Returns:
            Number of rows written
        """
        if not rates:
            return 0

        records = [
            {
                "base_currency": base_currency,
                "quote_currency": quote_currency,
                "date": rate_date,
                "rate": rate,
                "provider": self._history_provider.name,
            }
            for rate_date, rate in rates.items()
        ]

        insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
        stmt = insert(ExchangeRate).values(records)
        stmt = stmt.on_conflict_do_update(
            index_elements=["base_currency", "quote_currency", "date"],
            set_={
                "rate": stmt.excluded.rate,
                "provider": stmt.excluded.provider,
            }
        )

        db.execute(stmt)
        db.commit()
        return len(records)

    @staticmethod
    def _extract_date(dt: datetime | date | None) -> date | None:
        if dt is None:
            return None
        if isinstance(dt, datetime):
            return dt.date()
        return dt

    # =========================================================================
    # UTILITY METHODS
    # =========================================================================

    @staticmethod
    def invert_rate(rate: Decimal) -> Decimal:
        """
        Invert an exchange rate.

        If EUR/USD = 1.087, inverted is USD/EUR = 0.91996320
        """
        if rate == 0:
            raise ValueError("Cannot invert zero rate")
        return (Decimal("1") / rate).quantize(SHARE_PRECISION)
