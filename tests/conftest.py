# tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Mock price and FX provider fixtures
- Sample data factories (users, portfolios, ledger entries, cached prices)
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portfolio_engine.models import (
    Base,
    DailyPrice,
    Instrument,
    Operation,
    OperationType,
    Portfolio,
    QuoteDenomination,
    User,
)
from portfolio_engine.services.circuit_breaker import reset_all_breakers
from portfolio_engine.services.exceptions import FXProviderError, TickerNotFoundError
from portfolio_engine.services.market_data.base import (
    FxRateProvider,
    HistoricalPricesResult,
    MarketDataProvider,
    OHLCVData,
)
from portfolio_engine.services.valuation.types import make_position_key


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db(db_engine) -> Iterator[Session]:
    """Create a database session for testing."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def _reset_breakers():
    """Breakers are process-wide; start every test with them closed."""
    reset_all_breakers()
    yield
    reset_all_breakers()


# =============================================================================
# MOCK MARKET DATA PROVIDER
# =============================================================================

class MockMarketDataProvider(MarketDataProvider):
    """
    Mock implementation of MarketDataProvider for testing.

    Symbols without configured candles get a generated weekday series
    (close 100, +1 per business day from the request start) unless
    `generate` is disabled.
    """

    def __init__(self, generate: bool = True, currency: str = "EUR"):
        self._candles: dict[str, list[OHLCVData]] = {}
        self._currencies: dict[str, str] = {}
        self._errors: dict[str, Exception] = {}
        self._generate = generate
        self._default_currency = currency
        self.calls: list[tuple[str, date, date]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def set_prices(self, symbol: str, closes: dict[date, Decimal | str], currency: str | None = None) -> None:
        """Configure candles for a symbol ({date: close})."""
        self._candles[symbol.upper()] = [
            create_candle(day, Decimal(str(close))) for day, close in sorted(closes.items())
        ]
        if currency is not None:
            self._currencies[symbol.upper()] = currency

    def set_error(self, symbol: str, error: Exception) -> None:
        self._errors[symbol.upper()] = error

    def get_historical_prices(
            self,
            symbol: str,
            start_date: date,
            end_date: date,
    ) -> HistoricalPricesResult:
        symbol = symbol.upper()
        self.calls.append((symbol, start_date, end_date))

        if symbol in self._errors:
            raise self._errors[symbol]

        currency = self._currencies.get(symbol, self._default_currency)

        if symbol in self._candles:
            prices = [c for c in self._candles[symbol] if start_date <= c.date <= end_date]
        elif self._generate:
            prices = []
            current = start_date
            close = Decimal("100")
            while current <= end_date:
                if current.weekday() < 5:
                    prices.append(create_candle(current, close))
                    close += Decimal("1")
                current += timedelta(days=1)
        else:
            raise TickerNotFoundError(ticker=symbol, provider=self.name)

        return HistoricalPricesResult(
            symbol=symbol,
            currency=currency,
            prices=prices,
            from_date=start_date,
            to_date=end_date,
        )


class MockFxRateProvider(FxRateProvider):
    """Mock FX provider returning configured EUR-based quotes or failing."""

    def __init__(
            self,
            name: str = "mock-fx",
            quotes: dict[str, Decimal] | None = None,
            history: dict[date, Decimal] | None = None,
            fail: bool = False,
    ):
        self._name = name
        self._quotes = quotes or {}
        self._history = history or {}
        self._fail = fail
        self.rate_calls = 0
        self.history_calls: list[tuple[str, str, date, date]] = []

    @property
    def name(self) -> str:
        return self._name

    def get_rates(self, base: str, symbols: tuple[str, ...]) -> dict[str, Decimal]:
        self.rate_calls += 1
        if self._fail:
            raise FXProviderError(self._name, "simulated outage")
        return {s: self._quotes[s] for s in symbols if s in self._quotes}

    def get_historical_rates(
            self,
            base: str,
            quote: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        self.history_calls.append((base, quote, start_date, end_date))
        if self._fail:
            raise FXProviderError(self._name, "simulated outage")
        return {d: r for d, r in self._history.items() if start_date <= d <= end_date}


@pytest.fixture
def mock_provider() -> MockMarketDataProvider:
    """Create a fresh mock provider for each test."""
    return MockMarketDataProvider()


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

@dataclass
class LedgerRow:
    """Plain ledger entry for replay tests that do not need the database."""

    id: int
    operation_type: OperationType
    company: str
    symbol: str
    date: datetime
    shares: Decimal
    price: Decimal
    total_cost: Decimal
    currency: str = "EUR"
    exchange_rate: Decimal = Decimal("1")
    commission: Decimal = Decimal("0")


def make_entry(
        entry_id: int,
        operation_type: OperationType,
        on: date | datetime,
        shares: str | int,
        price: str | int,
        company: str = "Acme",
        symbol: str = "ACME",
        currency: str = "EUR",
        exchange_rate: str | int = 1,
        commission: str | int = 0,
        total_cost: str | int | None = None,
) -> LedgerRow:
    """Factory for LedgerRow; total_cost defaults to the cash amount in EUR."""
    shares_d = Decimal(str(shares))
    price_d = Decimal(str(price))
    fx = Decimal(str(exchange_rate))
    commission_d = Decimal(str(commission))
    if total_cost is None:
        gross = shares_d * price_d * fx
        fee = commission_d * fx
        cost = gross + fee if operation_type == OperationType.PURCHASE else gross - fee
    else:
        cost = Decimal(str(total_cost))

    return LedgerRow(
        id=entry_id,
        operation_type=operation_type,
        company=company,
        symbol=symbol,
        date=on if isinstance(on, datetime) else datetime.combine(on, datetime.min.time()),
        shares=shares_d,
        price=price_d,
        total_cost=cost,
        currency=currency,
        exchange_rate=fx,
        commission=commission_d,
    )


def create_candle(day: date, close: Decimal) -> OHLCVData:
    """Factory for a flat candle."""
    return OHLCVData(date=day, open=close, high=close, low=close, close=close, volume=1000)


def create_user(
        db: Session,
        email: str = "test@example.com",
) -> User:
    """Factory function for creating User entities in the database."""
    user = User(email=email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_portfolio(
        db: Session,
        user: User,
        name: str = "Test Portfolio",
        currency: str = "EUR",
) -> Portfolio:
    """Factory function for creating Portfolio entities in the database."""
    portfolio = Portfolio(
        user_id=user.id,
        name=name,
        currency=currency,
    )
    db.add(portfolio)
    db.commit()
    db.refresh(portfolio)
    return portfolio


def create_operation(
        db: Session,
        portfolio: Portfolio,
        operation_type: OperationType,
        on: date | datetime,
        shares: str | int,
        price: str | int,
        company: str = "Acme",
        symbol: str = "ACME",
        currency: str = "EUR",
        exchange_rate: str | int = 1,
        commission: str | int = 0,
        total_cost: str | int | None = None,
) -> Operation:
    """Factory for ledger operations; total_cost defaults to the EUR cash amount."""
    entry = make_entry(
        0, operation_type, on, shares, price,
        company=company,
        symbol=symbol,
        currency=currency,
        exchange_rate=exchange_rate,
        commission=commission,
        total_cost=total_cost,
    )
    operation = Operation(
        user_id=portfolio.user_id,
        portfolio_id=portfolio.id,
        operation_type=operation_type,
        company=entry.company,
        symbol=entry.symbol,
        date=entry.date,
        shares=entry.shares,
        price=entry.price,
        currency=entry.currency,
        exchange_rate=entry.exchange_rate,
        commission=entry.commission,
        total_cost=entry.total_cost,
    )
    db.add(operation)
    db.commit()
    db.refresh(operation)
    return operation


def create_daily_price(
        db: Session,
        portfolio: Portfolio,
        on: date,
        close: str | int,
        company: str = "Acme",
        symbol: str = "ACME",
        currency: str = "EUR",
        exchange_rate: str | int = 1,
        shares: str | int | None = None,
) -> DailyPrice:
    """Factory for cached DailyPrice rows."""
    row = DailyPrice(
        user_id=portfolio.user_id,
        portfolio_id=portfolio.id,
        position_key=make_position_key(company, symbol),
        company=company,
        symbol=symbol,
        date=on,
        close=Decimal(str(close)),
        currency=currency,
        exchange_rate=Decimal(str(exchange_rate)),
        shares=Decimal(str(shares)) if shares is not None else None,
        source="test",
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def create_instrument(
        db: Session,
        symbol: str,
        currency: str,
        quote_denomination: QuoteDenomination = QuoteDenomination.MAJOR,
        minor_unit_factor: int = 100,
) -> Instrument:
    """Factory for instrument metadata."""
    instrument = Instrument(
        symbol=symbol,
        name=symbol,
        currency=currency,
        quote_denomination=quote_denomination,
        minor_unit_factor=minor_unit_factor,
    )
    db.add(instrument)
    db.commit()
    db.refresh(instrument)
    return instrument


# =============================================================================
# FIXTURE EXPORTS (for convenience imports in tests)
# =============================================================================

@pytest.fixture
def sample_user(db: Session) -> User:
    """Provide a sample User for tests."""
    return create_user(db)


@pytest.fixture
def sample_portfolio(db: Session, sample_user: User) -> Portfolio:
    """Provide a sample Portfolio for tests."""
    return create_portfolio(db, sample_user)
