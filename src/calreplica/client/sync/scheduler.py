"""Scheduler for periodic sync runs.

This module provides:
- SyncScheduler: Runs the sync engine every ``interval_minutes``
- Manual trigger for CLI usage

A tick is skipped when the connectivity check fails or the previous run is
still going; the next tick tries again.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calreplica.client.sync.types import SyncInProgressError
from calreplica.core.types import SyncState

if TYPE_CHECKING:
    from calreplica.client.sync.engine import SyncEngine
    from calreplica.client.sync.types import SyncReport
    from calreplica.core.config import SyncSettings

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background scheduler driving the sync engine."""

    def __init__(
        self,
        engine: SyncEngine,
        settings: SyncSettings,
        is_online: Callable[[], bool] = lambda: True,
        on_report: Callable[[SyncReport], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine whose run_sync is called for all accounts.
            settings: Provides the interval between runs.
            is_online: Connectivity check evaluated before each run.
            on_report: Optional callback receiving each run's report.
        """
        self._engine = engine
        self._settings = settings
        self._is_online = is_online
        self._on_report = on_report
        self._scheduler: BackgroundScheduler | None = None
        self._run_lock = threading.Lock()
        self._state = SyncState.IDLE
        self._cancel = threading.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _sync_job(self) -> None:
        """Job function for scheduled sync."""
        try:
            self.run_now()
        except Exception:
            logger.exception("Error during scheduled sync")

    def run_now(self) -> SyncReport | None:
        """Run a sync immediately (manual trigger).

        Returns:
            The run's report, or None if skipped (offline or already running).
        """
        if not self._is_online():
            logger.info("Offline, skipping sync")
            self._state = SyncState.OFFLINE
            return None

        if not self._run_lock.acquire(blocking=False):
            logger.info("Previous sync still running, skipping")
            return None

        try:
            self._state = SyncState.SYNCING
            self._cancel.clear()
            report = self._engine.run_sync(cancel=self._cancel)
        except SyncInProgressError as e:
            logger.info(f"Skipping scheduled sync: {e}")
            self._state = SyncState.IDLE
            return None
        except Exception:
            self._state = SyncState.ERROR
            raise
        finally:
            self._run_lock.release()

        self._state = SyncState.IDLE if report.ok else SyncState.ERROR
        if self._on_report is not None:
            self._on_report(report)
        return report

    def start(self, run_immediately: bool = True) -> None:
        """Start the scheduler (a no-op when auto_sync is off)."""
        if self._scheduler is not None:
            return  # Already running
        if not self._settings.auto_sync:
            logger.info("Automatic sync is disabled, scheduler not started")
            return

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(minutes=self._settings.interval_minutes),
            id="calendar_sync",
            name="Periodic calendar sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Sync scheduler started (every {self._settings.interval_minutes} min)")

        if run_immediately:
            self._scheduler.add_job(self._sync_job, id="calendar_sync_initial")

    def stop(self) -> None:
        """Stop the scheduler, asking a running sync to stop after its current unit."""
        self._cancel.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")
