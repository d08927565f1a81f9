# portfolio_engine/models.py
import enum
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Date, DateTime, ForeignKey, Enum, Numeric, UniqueConstraint, Integer, JSON, BigInteger, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# Enums help enforce data integrity at the database level
class OperationType(str, enum.Enum):
    PURCHASE = "purchase"
    SALE = "sale"


class QuoteDenomination(str, enum.Enum):
    """
    Unit a venue quotes an instrument in.

    MAJOR: quoted in the nominal currency (USD, EUR, GBP)
    MINOR: quoted in a fraction of it (GBp pence on LSE, ZAc cents on JSE)
    """
    MAJOR = "MAJOR"
    MINOR = "MINOR"


class JobStatusEnum(str, enum.Enum):
    """
    Status values for background jobs.

    State transitions:
        IDLE → RUNNING → COMPLETED
        IDLE → RUNNING → PARTIALLY_FAILED (some positions failed)
        IDLE → RUNNING → FAILED (unexpected error)

        Any terminal state → RUNNING (next trigger)
    """
    IDLE = "IDLE"  # Never run
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIALLY_FAILED = "PARTIALLY_FAILED"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationship: One User has Many Portfolios
    portfolios: Mapped[list["Portfolio"]] = relationship(back_populates="owner")


class Portfolio(Base):
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String, default="EUR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    owner: Mapped["User"] = relationship(back_populates="portfolios")
    operations: Mapped[list["Operation"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan"
    )


class Instrument(Base):
    """
    Instrument metadata shared by all users.

    Carries the quote denomination so the price resolver can tell a
    pence-quoted LSE listing from a pound-quoted one without looking at
    the ticker.
    """
    __tablename__ = "instruments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    symbol: Mapped[str] = mapped_column(String, unique=True, index=True)  # e.g. "VOD.L"
    name: Mapped[str | None] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String, default="EUR")  # Nominal currency, e.g. "GBP"
    quote_denomination: Mapped[QuoteDenomination] = mapped_column(
        Enum(QuoteDenomination),
        default=QuoteDenomination.MAJOR
    )
    minor_unit_factor: Mapped[int] = mapped_column(Integer, default=100)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class Operation(Base):
    """
    One ledger entry (purchase or sale).

    The ledger is owned by the CRUD layer; this engine only reads it.
    total_cost is a positive EUR amount: cash paid including commission
    for purchases, net cash received for sales.
    """
    __tablename__ = "operations"
    __table_args__ = (
        # Point-in-time replay: "all operations for portfolio X up to date Y"
        Index('ix_operation_owner_portfolio_date', 'user_id', 'portfolio_id', 'date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), index=True)
    operation_type: Mapped[OperationType] = mapped_column(Enum(OperationType))
    company: Mapped[str] = mapped_column(String)
    symbol: Mapped[str] = mapped_column(String, default="")
    date: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Numeric(18, 8) supports values up to 9,999,999,999.99999999
    shares: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    price: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String, default="EUR")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 12), default=Decimal(1))  # currency → EUR at entry
    commission: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    total_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8))

    portfolio: Mapped["Portfolio"] = relationship(back_populates="operations")


class DailyPrice(Base):
    """
    Cached daily close per owner/portfolio/position.

    exchange_rate is the currency → EUR multiplier as resolved for that
    date; later reads never re-convert at a live rate. Rows are created
    once and only updated to fill columns that are still NULL.

    user_id/portfolio_id carry no foreign key: the benchmark index row is
    stored under the reserved identity 0/0.
    """
    __tablename__ = "daily_prices"
    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', 'position_key', 'date',
                         name='uq_daily_price_owner_position_date'),
        Index('ix_daily_price_position_date', 'user_id', 'portfolio_id', 'position_key', 'date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    portfolio_id: Mapped[int] = mapped_column(Integer, index=True)
    position_key: Mapped[str] = mapped_column(String)  # "company|||symbol"
    company: Mapped[str] = mapped_column(String)
    symbol: Mapped[str] = mapped_column(String)
    date: Mapped[date] = mapped_column(Date, index=True)

    # =========================================================================
    # OHLCV DATA
    # =========================================================================
    close: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    open: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    high: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    low: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    volume: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    change: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)  # vs previous close
    change_percent: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)

    # =========================================================================
    # VALUATION CONTEXT
    # =========================================================================
    currency: Mapped[str] = mapped_column(String, default="EUR")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 12), default=Decimal(1))
    shares: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)  # Held on that date

    source: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class ExchangeRate(Base):
    """
    Historical exchange rates between currency pairs.

    Convention: rate represents "1 base_currency = X quote_currency"
    Example: base=USD, quote=EUR, rate=0.92 means 1 USD = 0.92 EUR
    """
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint('base_currency', 'quote_currency', 'date',
                         name='uq_exchange_rate_pair_date'),
        Index('ix_exchange_rate_quote_base_date', 'quote_currency', 'base_currency', 'date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    base_currency: Mapped[str] = mapped_column(String(3), index=True)
    quote_currency: Mapped[str] = mapped_column(String(3), index=True)
    date: Mapped[date] = mapped_column(Date, index=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8))

    provider: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class DailyPortfolioStats(Base):
    """
    Immutable end-of-day valuation of one portfolio.

    Written once by the daily snapshot job; re-runs leave existing rows
    untouched.
    """
    __tablename__ = "daily_portfolio_stats"
    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', 'date', name='uq_portfolio_stats_owner_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    portfolio_id: Mapped[int] = mapped_column(Integer, index=True)
    date: Mapped[date] = mapped_column(Date, index=True)

    total_invested_eur: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    total_value_eur: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    pnl_eur: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    daily_change_eur: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    daily_change_percent: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    roi: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    active_positions_count: Mapped[int] = mapped_column(Integer, default=0)
    closed_operations_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class DailyPositionSnapshot(Base):
    """Immutable end-of-day valuation of one position."""
    __tablename__ = "daily_position_snapshots"
    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', 'position_key', 'date',
                         name='uq_position_snapshot_owner_position_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    portfolio_id: Mapped[int] = mapped_column(Integer, index=True)
    position_key: Mapped[str] = mapped_column(String)
    company: Mapped[str] = mapped_column(String)
    symbol: Mapped[str] = mapped_column(String)
    date: Mapped[date] = mapped_column(Date, index=True)

    shares: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    avg_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8))  # EUR per share
    total_invested: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    current_price: Mapped[Decimal] = mapped_column(Numeric(18, 8))  # EUR per share
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    pnl: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    pnl_percent: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String, default="EUR")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 12), default=Decimal(1))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class PortfolioReport(Base):
    """
    Derived report document produced after a snapshot run.

    Unlike snapshots, reports are regenerated: an existing row for the same
    key is replaced.
    """
    __tablename__ = "portfolio_reports"
    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', 'date', 'report_type',
                         name='uq_portfolio_report_owner_date_type'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    portfolio_id: Mapped[int] = mapped_column(Integer, index=True)
    date: Mapped[date] = mapped_column(Date, index=True)
    report_type: Mapped[str] = mapped_column(String(20), default="daily")
    data: Mapped[dict] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )


class JobStatus(Base):
    """
    Persisted state of a background job.

    Mirrors the in-process job state so operators can see when the job
    last ran, for which processing date, and how it ended.
    """
    __tablename__ = "job_status"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    job_name: Mapped[str] = mapped_column(String(50), unique=True, index=True)

    status: Mapped[JobStatusEnum] = mapped_column(
        Enum(JobStatusEnum),
        default=JobStatusEnum.IDLE
    )
    last_started: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_completed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_date: Mapped[date | None] = mapped_column(Date, nullable=True)  # Processing date of last run

    # Example: {"processed": 12, "failures": 1, "outcome": "partial_failures"}
    last_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
