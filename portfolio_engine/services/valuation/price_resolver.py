# portfolio_engine/services/valuation/price_resolver.py
"""
Resolves a position's daily close and EUR rate, with caching and backfill.

Resolution order for (owner, portfolio, position, date):
    1. Cached DailyPrice row for that date → returned as-is
    2. Cache under-covered (< 70% of business days since the first cached
       date, or nothing cached) → one full historical re-fetch, persisted
    3. Window fetch [date − lookback, date + forward tolerance] → pick the
       exact candle, else the nearest prior, else the first following one
    4. Persist the resolved close under the requested date and return it

The EUR rate stored with each row is captured at resolution time
(stored historical FX first, cross-rate map second) and never recomputed,
so past valuations stay stable.

Minor-unit listings (pence-quoted LSE shares, "GBp") are recognized from
Instrument.quote_denomination, or failing that from the provider's
currency code; the EUR multiplier is divided by the minor-unit factor.

Provider failures never escape resolve_close(): they are logged and the
caller gets None (require_close() turns that into MissingPriceDataError).
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portfolio_engine.models import DailyPrice, Instrument, QuoteDenomination
from portfolio_engine.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_breaker
from portfolio_engine.services.constants import (
    BACKFILL_COVERAGE_THRESHOLD,
    DEFAULT_BACKFILL_DAYS,
    MINOR_UNIT_CURRENCIES,
    PERCENTAGE_PRECISION,
    PRICE_FALLBACK_DAYS,
    PRICE_FORWARD_TOLERANCE_DAYS,
    SHARE_PRECISION,
    ZERO,
)
from portfolio_engine.services.exceptions import (
    MarketDataError,
    MissingPriceDataError,
    TickerNotFoundError,
)
from portfolio_engine.services.market_data.base import (
    HistoricalPricesResult,
    MarketDataProvider,
    OHLCVData,
)
from portfolio_engine.services.protocols import FXRateServiceProtocol
from portfolio_engine.services.valuation.types import ResolvedPrice, make_position_key
from portfolio_engine.utils.date_utils import count_business_days

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    """Outcome of a historical re-fetch for one position."""

    position_key: str
    start_date: date
    end_date: date
    candles_fetched: int = 0
    rows_created: int = 0
    rows_filled: int = 0
    error: str | None = None
    history: HistoricalPricesResult | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Denomination:
    """How a quoted price maps onto its nominal currency."""

    quoted_currency: str
    nominal_currency: str
    factor: int = 1


class PriceResolver:
    """
    Historical close resolution backed by the DailyPrice cache.

    Attributes:
        _provider: Market data provider for candles
        _fx_service: Point-in-time EUR rates (and FX history sync)
        _breaker: Circuit breaker guarding provider calls
    """

    def __init__(
            self,
            provider: MarketDataProvider,
            fx_service: FXRateServiceProtocol,
            breaker: CircuitBreaker | None = None,
            lookback_days: int = PRICE_FALLBACK_DAYS,
            forward_tolerance_days: int = PRICE_FORWARD_TOLERANCE_DAYS,
            coverage_threshold: Decimal = BACKFILL_COVERAGE_THRESHOLD,
            backfill_days: int = DEFAULT_BACKFILL_DAYS,
    ) -> None:
        self._provider = provider
        self._fx_service = fx_service
        self._breaker = breaker or get_breaker(
            f"prices-{provider.name}",
            excluded_exceptions=(TickerNotFoundError,),
        )
        self._lookback_days = lookback_days
        self._forward_tolerance_days = forward_tolerance_days
        self._coverage_threshold = coverage_threshold
        self._backfill_days = backfill_days

    # =========================================================================
    # PUBLIC METHODS
    # =========================================================================

    def resolve_close(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            company: str,
            symbol: str,
            on_date: date,
            fx_rates: dict[str, Decimal] | None = None,
            currency: str | None = None,
            shares: Decimal | None = None,
    ) -> ResolvedPrice | None:
        """
        Close and EUR rate for one position on one date.

        Args:
            fx_rates: Cross-rate map to use when no stored FX rate exists
            currency: Currency hint from the ledger, used when neither the
                provider nor instrument metadata report one
            shares: Shares held on that date, recorded on the cached row

        Returns:
            ResolvedPrice, or None when no close can be found
        """
        position_key = make_position_key(company, symbol)

        row = self._get_cached(db, owner_id, portfolio_id, position_key, on_date)
        if row is not None:
            if shares is not None and row.shares is None:
                row.shares = shares
                db.commit()
            logger.debug(f"Price cache hit: {position_key} on {on_date}")
            return self._to_resolved(row, cached=True)

        if not symbol:
            logger.warning(f"No symbol for {position_key}, cannot fetch a close for {on_date}")
            return None

        history: HistoricalPricesResult | None = None
        if self.needs_backfill(db, owner_id, portfolio_id, position_key, on_date):
            backfill = self.backfill(
                db, owner_id, portfolio_id, company, symbol, on_date,
                fx_rates=fx_rates, currency=currency,
            )
            row = self._get_cached(db, owner_id, portfolio_id, position_key, on_date)
            if row is not None:
                if shares is not None and row.shares is None:
                    row.shares = shares
                    db.commit()
                return self._to_resolved(row, cached=False)
            history = backfill.history

        if history is None or not history.prices:
            history = self._fetch(
                symbol,
                on_date - timedelta(days=self._lookback_days),
                on_date + timedelta(days=self._forward_tolerance_days),
            )
        if history is None or not history.prices:
            logger.warning(f"No candles for {position_key} around {on_date}")
            return None

        candle, previous = self._select_candle(history.prices, on_date)
        if candle is None:
            logger.warning(f"No usable candle for {position_key} around {on_date}")
            return None

        denomination = self._denomination(db, symbol, history.currency or currency)
        rate = self._eur_rate(db, denomination, candle.date, fx_rates)

        row = self._persist(
            db,
            owner_id=owner_id,
            portfolio_id=portfolio_id,
            company=company,
            symbol=symbol,
            position_key=position_key,
            on_date=on_date,
            candle=candle,
            previous_close=previous.close if previous else None,
            currency=denomination.quoted_currency,
            exchange_rate=rate,
            shares=shares,
        )
        if candle.date != on_date:
            logger.info(f"Resolved {position_key} on {on_date} from candle of {candle.date}")

        return ResolvedPrice(
            close=row.close,
            currency=row.currency,
            fx_rate_to_eur=row.exchange_rate,
            source=row.source,
            price_date=candle.date,
            cached=False,
        )

    def require_close(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            company: str,
            symbol: str,
            on_date: date,
            fx_rates: dict[str, Decimal] | None = None,
            currency: str | None = None,
            shares: Decimal | None = None,
    ) -> ResolvedPrice:
        """
        Same as resolve_close() but raises when no close is found.

        Raises:
            MissingPriceDataError: If no close can be resolved
        """
        resolved = self.resolve_close(
            db, owner_id, portfolio_id, company, symbol, on_date,
            fx_rates=fx_rates, currency=currency, shares=shares,
        )
        if resolved is None:
            raise MissingPriceDataError(make_position_key(company, symbol), on_date)
        return resolved

    def needs_backfill(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            position_key: str,
            as_of: date,
    ) -> bool:
        """
        True if the cache holds fewer rows than the coverage threshold
        of business days since its first cached date (or nothing at all).
        """
        first_date, row_count = db.execute(
            select(func.min(DailyPrice.date), func.count(DailyPrice.id))
            .where(
                DailyPrice.user_id == owner_id,
                DailyPrice.portfolio_id == portfolio_id,
                DailyPrice.position_key == position_key,
            )
        ).one()

        if not row_count:
            return True

        expected = count_business_days(first_date, as_of)
        return Decimal(row_count) < Decimal(expected) * self._coverage_threshold

    def backfill(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            company: str,
            symbol: str,
            as_of: date,
            fx_rates: dict[str, Decimal] | None = None,
            currency: str | None = None,
    ) -> BackfillResult:
        """
        Re-fetch a position's whole history and fill the cache.

        Range: from the first cached date (or `backfill_days` back when the
        cache is empty) up to as_of + forward tolerance. Existing rows are
        only completed, never overwritten.
        """
        position_key = make_position_key(company, symbol)
        first_date = db.scalar(
            select(func.min(DailyPrice.date)).where(
                DailyPrice.user_id == owner_id,
                DailyPrice.portfolio_id == portfolio_id,
                DailyPrice.position_key == position_key,
            )
        )
        start = first_date or (as_of - timedelta(days=self._backfill_days))
        end = as_of + timedelta(days=self._forward_tolerance_days)
        result = BackfillResult(position_key=position_key, start_date=start, end_date=end)

        logger.info(f"Backfilling {position_key} from {start} to {end}")

        history = self._fetch(symbol, start, end)
        if history is None:
            result.error = "fetch failed"
            return result

        result.history = history
        result.candles_fetched = history.days_fetched
        if not history.prices:
            return result

        denomination = self._denomination(db, symbol, history.currency or currency)
        if denomination.nominal_currency != "EUR":
            self._fx_service.sync_rates(db, denomination.nominal_currency, "EUR", start, as_of)

        if fx_rates is None:
            fx_rates = self._fx_service.get_eur_cross_rates()

        existing = {
            row.date: row
            for row in db.scalars(
                select(DailyPrice).where(
                    DailyPrice.user_id == owner_id,
                    DailyPrice.portfolio_id == portfolio_id,
                    DailyPrice.position_key == position_key,
                    DailyPrice.date >= start,
                    DailyPrice.date <= end,
                )
            )
        }

        previous: OHLCVData | None = None
        for candle in history.prices:
            change, change_percent = self._change(candle.close, previous.close if previous else None)
            row = existing.get(candle.date)

            if row is None:
                db.add(DailyPrice(
                    user_id=owner_id,
                    portfolio_id=portfolio_id,
                    position_key=position_key,
                    company=company,
                    symbol=symbol,
                    date=candle.date,
                    close=candle.close,
                    open=candle.open,
                    high=candle.high,
                    low=candle.low,
                    volume=candle.volume,
                    change=change,
                    change_percent=change_percent,
                    currency=denomination.quoted_currency,
                    exchange_rate=self._eur_rate(db, denomination, candle.date, fx_rates),
                    source=self._provider.name,
                ))
                result.rows_created += 1
            elif self._fill_missing(row, candle, change, change_percent):
                result.rows_filled += 1

            previous = candle

        db.commit()
        logger.info(
            f"Backfill complete for {position_key}: fetched={result.candles_fetched}, "
            f"created={result.rows_created}, filled={result.rows_filled}"
        )
        return result

    # =========================================================================
    # PRIVATE METHODS - Provider
    # =========================================================================

    def _fetch(self, symbol: str, start: date, end: date) -> HistoricalPricesResult | None:
        """Fetch candles through the breaker; failures become None."""
        try:
            with self._breaker:
                return self._provider.get_historical_prices(symbol, start, end)
        except CircuitBreakerOpen as e:
            logger.warning(f"Skipping fetch for {symbol}: {e}")
        except MarketDataError as e:
            logger.warning(f"Price fetch failed for {symbol} ({start} to {end}): {e}")
        except Exception as e:
            logger.error(f"Unexpected error fetching {symbol}: {e}")
        return None

    @staticmethod
    def _select_candle(
            candles: list[OHLCVData],
            on_date: date,
    ) -> tuple[OHLCVData | None, OHLCVData | None]:
        """
        Pick the candle for on_date and the one before it.

        Exact date first, else the nearest prior candle, else the first
        candle after on_date (holiday with only later data in the window).
        """
        ordered = sorted(candles, key=lambda c: c.date)
        prior = [c for c in ordered if c.date <= on_date]

        if prior:
            chosen = prior[-1]
            previous = prior[-2] if len(prior) > 1 else None
            return chosen, previous

        if ordered:
            return ordered[0], None

        return None, None

    # =========================================================================
    # PRIVATE METHODS - Currency
    # =========================================================================

    @staticmethod
    def _denomination(db: Session, symbol: str, quoted_currency: str | None) -> Denomination:
        """Explicit instrument metadata first, then the provider's currency code."""
        instrument = db.scalar(select(Instrument).where(Instrument.symbol == symbol))

        if instrument is not None and instrument.quote_denomination == QuoteDenomination.MINOR:
            nominal = instrument.currency.upper()
            return Denomination(
                quoted_currency=quoted_currency or nominal,
                nominal_currency=nominal,
                factor=instrument.minor_unit_factor or 100,
            )

        code = quoted_currency or (instrument.currency if instrument else None) or "EUR"
        if code in MINOR_UNIT_CURRENCIES:
            nominal, factor = MINOR_UNIT_CURRENCIES[code]
            return Denomination(quoted_currency=code, nominal_currency=nominal, factor=factor)

        return Denomination(quoted_currency=code.upper(), nominal_currency=code.upper())

    def _eur_rate(
            self,
            db: Session,
            denomination: Denomination,
            on_date: date,
            fx_rates: dict[str, Decimal] | None,
    ) -> Decimal:
        rate = self._fx_service.rate_to_eur(db, denomination.nominal_currency, on_date, fx_rates)
        if denomination.factor != 1:
            rate = rate / Decimal(denomination.factor)
        return rate.quantize(Decimal("0.000000000001"))

    # =========================================================================
    # PRIVATE METHODS - Database
    # =========================================================================

    @staticmethod
    def _get_cached(
            db: Session,
            owner_id: int,
            portfolio_id: int,
            position_key: str,
            on_date: date,
    ) -> DailyPrice | None:
        return db.scalar(
            select(DailyPrice).where(
                DailyPrice.user_id == owner_id,
                DailyPrice.portfolio_id == portfolio_id,
                DailyPrice.position_key == position_key,
                DailyPrice.date == on_date,
            )
        )

    def _persist(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            company: str,
            symbol: str,
            position_key: str,
            on_date: date,
            candle: OHLCVData,
            previous_close: Decimal | None,
            currency: str,
            exchange_rate: Decimal,
            shares: Decimal | None,
    ) -> DailyPrice:
        """Create-if-absent; a concurrent insert wins and is returned."""
        change, change_percent = self._change(candle.close, previous_close)
        row = DailyPrice(
            user_id=owner_id,
            portfolio_id=portfolio_id,
            position_key=position_key,
            company=company,
            symbol=symbol,
            date=on_date,
            close=candle.close,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            volume=candle.volume,
            change=change,
            change_percent=change_percent,
            currency=currency,
            exchange_rate=exchange_rate,
            shares=shares,
            source=self._provider.name,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug(f"DailyPrice for {position_key} on {on_date} created concurrently")
            existing = self._get_cached(db, owner_id, portfolio_id, position_key, on_date)
            if existing is None:
                raise
            return existing
        return row

    @staticmethod
    def _fill_missing(
            row: DailyPrice,
            candle: OHLCVData,
            change: Decimal | None,
            change_percent: Decimal | None,
    ) -> bool:
        """Fill NULL columns of an existing row. Returns True if anything changed."""
        updates = {
            "open": candle.open,
            "high": candle.high,
            "low": candle.low,
            "volume": candle.volume,
            "change": change,
            "change_percent": change_percent,
        }
        changed = False
        for column, value in updates.items():
            if value is not None and getattr(row, column) is None:
                setattr(row, column, value)
                changed = True
        return changed

    @staticmethod
    def _change(close: Decimal, previous_close: Decimal | None) -> tuple[Decimal | None, Decimal | None]:
        if previous_close is None or previous_close == ZERO:
            return None, None
        change = (close - previous_close).quantize(SHARE_PRECISION)
        change_percent = (change / previous_close * 100).quantize(PERCENTAGE_PRECISION)
        return change, change_percent

    @staticmethod
    def _to_resolved(row: DailyPrice, cached: bool) -> ResolvedPrice:
        return ResolvedPrice(
            close=row.close,
            currency=row.currency,
            fx_rate_to_eur=row.exchange_rate,
            source=row.source,
            price_date=row.date,
            cached=cached,
        )
