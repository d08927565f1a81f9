# portfolio_engine/services/snapshots/__init__.py
"""
Daily snapshot job and its scheduler.

Usage:
    from portfolio_engine.services.snapshots import DailySnapshotJob, DailySnapshotScheduler
"""

from portfolio_engine.services.snapshots.job import (
    DailySnapshotJob,
    JobState,
    SnapshotFailure,
    SnapshotOutcome,
    SnapshotRunResult,
)
from portfolio_engine.services.snapshots.scheduler import DailySnapshotScheduler

__all__ = [
    "DailySnapshotJob",
    "DailySnapshotScheduler",
    "JobState",
    "SnapshotFailure",
    "SnapshotOutcome",
    "SnapshotRunResult",
]
