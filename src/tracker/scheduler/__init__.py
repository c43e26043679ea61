"""Recurring refresh of cached rates."""

from tracker.scheduler.jobs import CryptoRefreshJob, FiatSnapshotJob
from tracker.scheduler.refresh import RefreshScheduler, SchedulerState

__all__ = ["CryptoRefreshJob", "FiatSnapshotJob", "RefreshScheduler", "SchedulerState"]
