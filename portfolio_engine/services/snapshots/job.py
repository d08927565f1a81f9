# portfolio_engine/services/snapshots/job.py
"""
Daily snapshot job: one immutable valuation record per portfolio and day.

For the processing date (previous business day in the reference zone):
    1. Fetch the EUR cross-rate map once for the whole run
    2. For every owner/portfolio with ledger entries:
         replay the ledger up to that date → active positions
         resolve each position's close (DailyPrice created if absent)
         create DailyPositionSnapshot rows if absent
         create the DailyPortfolioStats row if absent
    3. Snapshot the benchmark index under the reserved identity
    4. Fire the report hook (failures are logged, never propagated)

Failure isolation:
    - A position without a close is recorded and skipped; the portfolio
      aggregate is built from the remaining positions
    - A ledger integrity violation (or any other error) fails that
      portfolio only; the run continues with the next one
    - run() never raises: total failure is reported as outcome "failed"

Snapshot rows are create-if-absent. Once a row exists for a date, later
runs leave it untouched, so duplicate triggers are safe.

Reentrancy:
    A second run() while one is in flight returns "already_running".
    The guard is a lock held in-process; it does NOT protect against two
    processes running the job concurrently. Multi-instance deployments
    need an external lock.

Usage:
    job = DailySnapshotJob(price_resolver, fx_service)
    result = job.run(db)
    if not result.ok:
        logger.warning(result.reason)
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portfolio_engine.config import settings
from portfolio_engine.models import (
    DailyPortfolioStats,
    DailyPositionSnapshot,
    JobStatus,
    JobStatusEnum,
    Operation,
)
from portfolio_engine.services.constants import (
    BENCHMARK_COMPANY,
    BENCHMARK_CURRENCY,
    BENCHMARK_OWNER_ID,
    BENCHMARK_PORTFOLIO_ID,
    BENCHMARK_SYMBOL,
    CURRENCY_PRECISION,
    DAILY_SNAPSHOT_JOB_NAME,
    PERCENTAGE_PRECISION,
    SHARE_PRECISION,
    ZERO,
)
from portfolio_engine.services.exceptions import (
    JobReentrancyBlocked,
    LedgerIntegrityViolation,
    MissingPriceDataError,
)
from portfolio_engine.services.protocols import FXRateServiceProtocol, PriceResolverProtocol
from portfolio_engine.services.valuation.position_aggregator import PositionAggregator
from portfolio_engine.services.valuation.types import Position, make_position_key
from portfolio_engine.utils.context import correlation_scope
from portfolio_engine.utils.date_utils import previous_business_day, processing_date

logger = logging.getLogger(__name__)

ReportHook = Callable[[Session, date], Any]


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

class SnapshotOutcome(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL_FAILURES = "partial_failures"
    NO_DATA = "no_data"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


@dataclass(frozen=True)
class SnapshotFailure:
    """A position (or whole portfolio, position_key=None) that was not snapshotted."""

    owner_id: int
    portfolio_id: int
    position_key: str | None
    reason: str

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "portfolio_id": self.portfolio_id,
            "position_key": self.position_key,
            "reason": self.reason,
        }


@dataclass
class SnapshotRunResult:
    """
    Outcome of one DailySnapshotJob.run().

    Attributes:
        ok: False for no_data, already_running, failed and for runs where
            every portfolio failed
        processed: Portfolios with a stats row for the date after the run
        failures: Per-position and per-portfolio failures
        reason: Why the run did not complete (None on success)
    """

    ok: bool
    outcome: SnapshotOutcome
    date: date | None = None
    processed: int = 0
    failures: list[SnapshotFailure] = field(default_factory=list)
    reason: str | None = None

    positions_created: int = 0
    stats_created: int = 0
    benchmark_created: bool = False

    def to_summary(self) -> dict:
        """JSON-safe summary stored on the JobStatus row."""
        return {
            "outcome": self.outcome.value,
            "date": self.date.isoformat() if self.date else None,
            "processed": self.processed,
            "positions_created": self.positions_created,
            "stats_created": self.stats_created,
            "benchmark_created": self.benchmark_created,
            "failures": [f.to_dict() for f in self.failures],
        }


# =============================================================================
# IN-PROCESS JOB STATE
# =============================================================================

@dataclass
class JobState:
    """
    In-process state of a job: IDLE → RUNNING → IDLE.

    last_status keeps how the previous run ended
    (COMPLETED, PARTIALLY_FAILED or FAILED).
    """

    job_name: str = DAILY_SNAPSHOT_JOB_NAME
    status: JobStatusEnum = JobStatusEnum.IDLE
    last_status: JobStatusEnum | None = None
    last_run_date: date | None = None
    last_result: SnapshotRunResult | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def acquire(self) -> None:
        """
        Raises:
            JobReentrancyBlocked: If a run is already in flight
        """
        if not self._lock.acquire(blocking=False):
            raise JobReentrancyBlocked(self.job_name)
        self.status = JobStatusEnum.RUNNING

    def release(self, final_status: JobStatusEnum, result: SnapshotRunResult) -> None:
        self.last_status = final_status
        self.last_result = result
        if result.date is not None and final_status != JobStatusEnum.FAILED:
            self.last_run_date = result.date
        self.status = JobStatusEnum.IDLE
        self._lock.release()

    @property
    def is_running(self) -> bool:
        return self.status == JobStatusEnum.RUNNING


# =============================================================================
# DAILY SNAPSHOT JOB
# =============================================================================

class DailySnapshotJob:
    """
    Creates the daily valuation records for every portfolio.

    Attributes:
        _price_resolver: Close + EUR rate per position/date (cached)
        _fx_service: EUR cross-rate map for the run
        _aggregator: Ledger replay
        _report_hook: Called with (db, date) after a run that processed data
        _zone: Reference time zone for the processing date
        _state: In-process reentrancy guard and last-run record
    """

    def __init__(
            self,
            price_resolver: PriceResolverProtocol,
            fx_service: FXRateServiceProtocol,
            aggregator: PositionAggregator | None = None,
            report_hook: ReportHook | None = None,
            zone: ZoneInfo | None = None,
            state: JobState | None = None,
            include_benchmark: bool = True,
    ) -> None:
        self._price_resolver = price_resolver
        self._fx_service = fx_service
        self._aggregator = aggregator or PositionAggregator()
        self._report_hook = report_hook
        self._zone = zone or settings.snapshot_zone
        self._state = state or JobState()
        self._include_benchmark = include_benchmark

    @property
    def state(self) -> JobState:
        return self._state

    # =========================================================================
    # PUBLIC METHODS
    # =========================================================================

    def run(self, db: Session, today: date | None = None) -> SnapshotRunResult:
        """
        Snapshot every portfolio for the processing date.

        Args:
            db: Database session
            today: Run date; the processing date is the business day before
                it. Defaults to the current date in the reference zone.

        Returns:
            SnapshotRunResult (never raises)
        """
        try:
            self._state.acquire()
        except JobReentrancyBlocked as e:
            logger.info(f"Skipping snapshot run: {e}")
            return SnapshotRunResult(
                ok=False,
                outcome=SnapshotOutcome.ALREADY_RUNNING,
                reason=str(e),
            )

        result: SnapshotRunResult | None = None
        run_date: date | None = None
        final_status = JobStatusEnum.FAILED
        with correlation_scope(DAILY_SNAPSHOT_JOB_NAME) as correlation_id:
            started = datetime.now(timezone.utc)
            try:
                run_date = self._processing_date(today)
                logger.info(f"Daily snapshot started for {run_date} ({correlation_id})")
                self._save_status(db, JobStatusEnum.RUNNING, last_started=started)

                result = self._run(db, run_date)
                final_status = self._final_status(result)
            except Exception as e:
                logger.exception(f"Daily snapshot failed: {e}")
                db.rollback()
                result = SnapshotRunResult(
                    ok=False,
                    outcome=SnapshotOutcome.FAILED,
                    date=run_date,
                    reason=str(e),
                )
            finally:
                if result is None:
                    result = SnapshotRunResult(ok=False, outcome=SnapshotOutcome.FAILED, reason="interrupted")
                self._state.release(final_status, result)

            self._record_completion(db, final_status, result)

            logger.info(
                f"Daily snapshot finished: outcome={result.outcome.value}, date={result.date}, "
                f"processed={result.processed}, failures={len(result.failures)}, "
                f"positions_created={result.positions_created}, stats_created={result.stats_created}"
            )

            if result.processed > 0:
                self._fire_report_hook(db, result.date)

        return result

    # =========================================================================
    # PRIVATE METHODS - Run
    # =========================================================================

    def _processing_date(self, today: date | None) -> date:
        if today is not None:
            return previous_business_day(today)
        return processing_date(self._zone)

    def _run(self, db: Session, run_date: date) -> SnapshotRunResult:
        result = SnapshotRunResult(ok=False, outcome=SnapshotOutcome.NO_DATA, date=run_date)
        cross_rates = self._fx_service.get_eur_cross_rates()

        portfolios = db.execute(
            select(Operation.user_id, Operation.portfolio_id)
            .distinct()
            .order_by(Operation.user_id, Operation.portfolio_id)
        ).all()
        logger.info(f"Snapshotting {len(portfolios)} portfolios for {run_date}")

        for owner_id, portfolio_id in portfolios:
            try:
                if self._snapshot_portfolio(db, owner_id, portfolio_id, run_date, cross_rates, result):
                    result.processed += 1
            except LedgerIntegrityViolation as e:
                db.rollback()
                logger.error(f"Ledger integrity violation in portfolio {portfolio_id} (owner {owner_id}): {e}")
                result.failures.append(SnapshotFailure(owner_id, portfolio_id, e.position_key, str(e)))
            except Exception as e:
                db.rollback()
                logger.error(f"Snapshot failed for portfolio {portfolio_id} (owner {owner_id}): {e}")
                result.failures.append(SnapshotFailure(owner_id, portfolio_id, None, str(e)))

        if self._include_benchmark:
            self._snapshot_benchmark(db, run_date, cross_rates, result)

        if result.processed > 0:
            result.ok = True
            result.outcome = (
                SnapshotOutcome.PARTIAL_FAILURES if result.failures else SnapshotOutcome.COMPLETED
            )
        elif result.failures:
            result.outcome = SnapshotOutcome.PARTIAL_FAILURES
            result.reason = "Every portfolio failed"
        else:
            result.outcome = SnapshotOutcome.NO_DATA
            result.reason = "No portfolios with ledger entries"

        return result

    def _snapshot_portfolio(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            run_date: date,
            cross_rates: dict[str, Decimal],
            result: SnapshotRunResult,
    ) -> bool:
        """
        Snapshot one portfolio. Returns False if it had no ledger entries by
        run_date or none of its positions could be valued.

        Raises:
            LedgerIntegrityViolation: If the replay goes negative
        """
        cutoff = datetime.combine(run_date + timedelta(days=1), time.min)
        operations = db.scalars(
            select(Operation).where(
                Operation.user_id == owner_id,
                Operation.portfolio_id == portfolio_id,
                Operation.date < cutoff,
            )
        ).all()
        if not operations:
            return False

        aggregation = self._aggregator.calculate(operations)

        existing = {
            row.position_key: row
            for row in db.scalars(
                select(DailyPositionSnapshot).where(
                    DailyPositionSnapshot.user_id == owner_id,
                    DailyPositionSnapshot.portfolio_id == portfolio_id,
                    DailyPositionSnapshot.date == run_date,
                )
            )
        }

        total_invested = ZERO
        total_value = ZERO
        valued = 0

        for position in aggregation.positions:
            row = existing.get(position.position_key)
            if row is None:
                row = self._snapshot_position(
                    db, owner_id, portfolio_id, position, run_date, cross_rates, result
                )
                if row is None:
                    continue
            total_invested += row.total_invested
            total_value += row.total_value
            valued += 1

        # Stats rows are immutable; an all-zero aggregate would stick
        if aggregation.positions and not valued:
            logger.warning(
                f"No position of portfolio {portfolio_id} (owner {owner_id}) could be valued "
                f"on {run_date}, stats not written"
            )
            return False

        stats = db.scalar(
            select(DailyPortfolioStats).where(
                DailyPortfolioStats.user_id == owner_id,
                DailyPortfolioStats.portfolio_id == portfolio_id,
                DailyPortfolioStats.date == run_date,
            )
        )
        if stats is not None:
            logger.debug(f"Stats already exist for portfolio {portfolio_id} on {run_date}")
            db.commit()
            return True

        db.add(self._build_stats(
            db, owner_id, portfolio_id, run_date,
            total_invested=total_invested,
            total_value=total_value,
            active_positions_count=valued,
            closed_operations_count=aggregation.closed_operations_count,
        ))
        try:
            db.commit()
            result.stats_created += 1
        except IntegrityError:
            db.rollback()
            logger.info(f"Snapshot for portfolio {portfolio_id} on {run_date} created concurrently")

        return True

    def _snapshot_position(
            self,
            db: Session,
            owner_id: int,
            portfolio_id: int,
            position: Position,
            run_date: date,
            cross_rates: dict[str, Decimal],
            result: SnapshotRunResult,
    ) -> DailyPositionSnapshot | None:
        """Resolve the close and add the position snapshot; failures are recorded, not raised."""
        try:
            price = self._price_resolver.resolve_close(
                db, owner_id, portfolio_id, position.company, position.symbol, run_date,
                fx_rates=cross_rates,
                currency=position.currency,
                shares=position.shares,
            )
        except Exception as e:
            db.rollback()
            logger.warning(f"Price resolution error for {position.position_key} on {run_date}: {e}")
            result.failures.append(SnapshotFailure(owner_id, portfolio_id, position.position_key, str(e)))
            return None

        if price is None:
            error = MissingPriceDataError(position.position_key, run_date)
            logger.warning(f"{error} (owner {owner_id}, portfolio {portfolio_id})")
            result.failures.append(SnapshotFailure(owner_id, portfolio_id, position.position_key, str(error)))
            return None

        eur_price = price.close * price.fx_rate_to_eur
        value = (eur_price * position.shares).quantize(CURRENCY_PRECISION)
        invested = position.cost_basis.quantize(CURRENCY_PRECISION)
        pnl = value - invested
        pnl_percent = (pnl / invested * 100).quantize(PERCENTAGE_PRECISION) if invested > ZERO else ZERO

        row = DailyPositionSnapshot(
            user_id=owner_id,
            portfolio_id=portfolio_id,
            position_key=position.position_key,
            company=position.company,
            symbol=position.symbol,
            date=run_date,
            shares=position.shares,
            avg_cost=position.avg_cost,
            total_invested=invested,
            current_price=eur_price.quantize(SHARE_PRECISION),
            total_value=value,
            pnl=pnl,
            pnl_percent=pnl_percent,
            currency=price.currency,
            exchange_rate=price.fx_rate_to_eur,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(f"Snapshot for {position.position_key} on {run_date} created concurrently")
            return db.scalar(
                select(DailyPositionSnapshot).where(
                    DailyPositionSnapshot.user_id == owner_id,
                    DailyPositionSnapshot.portfolio_id == portfolio_id,
                    DailyPositionSnapshot.position_key == position.position_key,
                    DailyPositionSnapshot.date == run_date,
                )
            )
        result.positions_created += 1
        return row

    @staticmethod
    def _build_stats(
            db: Session,
            owner_id: int,
            portfolio_id: int,
            run_date: date,
            total_invested: Decimal,
            total_value: Decimal,
            active_positions_count: int,
            closed_operations_count: int,
    ) -> DailyPortfolioStats:
        """Totals and active_positions_count cover the valued positions only."""
        previous = db.scalar(
            select(DailyPortfolioStats)
            .where(
                DailyPortfolioStats.user_id == owner_id,
                DailyPortfolioStats.portfolio_id == portfolio_id,
                DailyPortfolioStats.date < run_date,
            )
            .order_by(DailyPortfolioStats.date.desc())
            .limit(1)
        )

        daily_change = None
        daily_change_percent = None
        if previous is not None:
            daily_change = (total_value - previous.total_value_eur).quantize(CURRENCY_PRECISION)
            if previous.total_value_eur > ZERO:
                daily_change_percent = (
                    daily_change / previous.total_value_eur * 100
                ).quantize(PERCENTAGE_PRECISION)

        pnl = total_value - total_invested
        roi = (pnl / total_invested * 100).quantize(PERCENTAGE_PRECISION) if total_invested > ZERO else ZERO

        return DailyPortfolioStats(
            user_id=owner_id,
            portfolio_id=portfolio_id,
            date=run_date,
            total_invested_eur=total_invested,
            total_value_eur=total_value,
            pnl_eur=pnl,
            daily_change_eur=daily_change,
            daily_change_percent=daily_change_percent,
            roi=roi,
            active_positions_count=active_positions_count,
            closed_operations_count=closed_operations_count,
        )

    def _snapshot_benchmark(
            self,
            db: Session,
            run_date: date,
            cross_rates: dict[str, Decimal],
            result: SnapshotRunResult,
    ) -> None:
        """Cache the index close under the reserved identity."""
        position_key = make_position_key(BENCHMARK_COMPANY, BENCHMARK_SYMBOL)
        try:
            price = self._price_resolver.resolve_close(
                db, BENCHMARK_OWNER_ID, BENCHMARK_PORTFOLIO_ID,
                BENCHMARK_COMPANY, BENCHMARK_SYMBOL, run_date,
                fx_rates=cross_rates,
                currency=BENCHMARK_CURRENCY,
            )
        except Exception as e:
            db.rollback()
            logger.warning(f"Benchmark snapshot failed for {run_date}: {e}")
            result.failures.append(
                SnapshotFailure(BENCHMARK_OWNER_ID, BENCHMARK_PORTFOLIO_ID, position_key, str(e))
            )
            return

        if price is None:
            error = MissingPriceDataError(position_key, run_date)
            logger.warning(f"Benchmark: {error}")
            result.failures.append(
                SnapshotFailure(BENCHMARK_OWNER_ID, BENCHMARK_PORTFOLIO_ID, position_key, str(error))
            )
            return

        result.benchmark_created = not price.cached

    def _fire_report_hook(self, db: Session, run_date: date) -> None:
        if self._report_hook is None:
            return
        try:
            self._report_hook(db, run_date)
        except Exception as e:
            db.rollback()
            logger.error(f"Report generation failed for {run_date}: {e}")

    # =========================================================================
    # PRIVATE METHODS - Status
    # =========================================================================

    @staticmethod
    def _final_status(result: SnapshotRunResult) -> JobStatusEnum:
        if result.outcome == SnapshotOutcome.COMPLETED:
            return JobStatusEnum.COMPLETED
        if result.outcome == SnapshotOutcome.PARTIAL_FAILURES:
            return JobStatusEnum.PARTIALLY_FAILED
        if result.outcome == SnapshotOutcome.NO_DATA:
            return JobStatusEnum.COMPLETED
        return JobStatusEnum.FAILED

    def _record_completion(
            self,
            db: Session,
            final_status: JobStatusEnum,
            result: SnapshotRunResult,
    ) -> None:
        try:
            self._save_status(
                db,
                final_status,
                last_completed=datetime.now(timezone.utc),
                last_run_date=result.date if final_status != JobStatusEnum.FAILED else None,
                last_summary=result.to_summary(),
                last_error=result.reason,
            )
        except Exception as e:
            db.rollback()
            logger.error(f"Could not persist job status: {e}")

    def _save_status(
            self,
            db: Session,
            status: JobStatusEnum,
            last_started: datetime | None = None,
            last_completed: datetime | None = None,
            last_run_date: date | None = None,
            last_summary: dict | None = None,
            last_error: str | None = None,
    ) -> JobStatus:
        """Find-or-create the job's JobStatus row and update the given fields."""
        row = db.scalar(select(JobStatus).where(JobStatus.job_name == self._state.job_name))
        if row is None:
            row = JobStatus(job_name=self._state.job_name)
            db.add(row)

        row.status = status
        if last_started is not None:
            row.last_started = last_started
        if last_completed is not None:
            row.last_completed = last_completed
        if last_run_date is not None:
            row.last_run_date = last_run_date
        if last_summary is not None:
            row.last_summary = last_summary
        if status != JobStatusEnum.RUNNING:
            row.last_error = last_error

        db.commit()
        return row
