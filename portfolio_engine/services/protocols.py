# portfolio_engine/services/protocols.py
"""
Protocol interfaces for service dependency injection.

Using typing.Protocol enables structural subtyping:
- ORM rows and plain test doubles both satisfy LedgerEntry
- Test mocks work without explicit inheritance
- Clear documentation of what each consumer actually calls
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from portfolio_engine.models import OperationType
    from portfolio_engine.services.valuation.types import PortfolioHistory, ResolvedPrice


class LedgerEntry(Protocol):
    """
    Read-only view of one ledger operation.

    Satisfied by portfolio_engine.models.Operation.
    """

    id: int
    operation_type: OperationType
    company: str
    symbol: str
    date: datetime
    shares: Decimal
    price: Decimal
    currency: str
    exchange_rate: Decimal
    commission: Decimal
    total_cost: Decimal


class FXRateServiceProtocol(Protocol):
    """Interface required by PriceResolver and the snapshot job."""

    def get_eur_cross_rates(self) -> dict[str, Decimal]:
        ...

    def rate_to_eur(
        self,
        db: Session,
        currency: str,
        on_date: date,
        cross_rates: dict[str, Decimal] | None = None,
    ) -> Decimal:
        ...

    def sync_rates(
        self,
        db: Session,
        base_currency: str,
        quote_currency: str,
        start_date: date,
        end_date: date,
    ) -> object:
        ...


class PriceResolverProtocol(Protocol):
    """Interface required by DailySnapshotJob."""

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
        ...


class HistoryProviderProtocol(Protocol):
    """Interface required by ReportAggregator."""

    def get_history(
        self,
        db: Session,
        owner_id: int,
        portfolio_id: int,
        days: int,
        today: date | None = None,
    ) -> PortfolioHistory:
        ...
