"""
Cycle scheduler.

Drives fetch -> classify -> persist -> evaluate -> broadcast on a fixed
interval, with an initial delayed run after start and on-demand manual runs.
All entry points share one single-flight guard: a run requested while a
cycle is in progress is dropped, never queued.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from src.changes.detector import ChangeDetector
from src.data.fetcher import StockScreenerFetcher
from src.database.models import ScrapingResult
from src.database.repository import AlertRuleRepository, StockRepository
from src.errors import PersistenceFailure, SourceUnavailable
from src.hub.messages import ScrapingStatus
from src.hub.server import DistributionHub
from src.rules.engine import RuleEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerStatus:
    """Point-in-time scheduler state. Informational only."""

    running: bool
    last_run: Optional[datetime]
    next_run: Optional[datetime]
    interval_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRunning": self.running,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "intervalMinutes": self.interval_minutes,
        }


class CycleScheduler:
    """Runs pipeline cycles for one source against many subscribers."""

    def __init__(
        self,
        fetcher: StockScreenerFetcher,
        stock_repo: StockRepository,
        rule_repo: AlertRuleRepository,
        detector: ChangeDetector,
        rule_engine: RuleEngine,
        hub: DistributionHub,
        interval_minutes: int = 1,
        initial_delay_seconds: float = 5.0,
        retention_days: int = 30,
        prune_interval_hours: float = 1.0,
    ):
        self.fetcher = fetcher
        self.stock_repo = stock_repo
        self.rule_repo = rule_repo
        self.detector = detector
        self.rule_engine = rule_engine
        self.hub = hub
        self.interval_minutes = interval_minutes
        self.initial_delay_seconds = initial_delay_seconds
        self.retention_days = retention_days
        self.prune_interval = timedelta(hours=prune_interval_hours)

        self._running = False
        self._last_run: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._last_pruned: Optional[datetime] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._initial_run: Optional[asyncio.TimerHandle] = None
        self._cycle_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, interval_minutes: Optional[int] = None) -> None:
        """
        Arm the recurring timer and the initial delayed run.

        Must be called from within the event loop. Returns immediately.
        """
        if interval_minutes is not None:
            self.interval_minutes = interval_minutes
        if self._timer_task is not None:
            logger.warning("Scheduler already started")
            return

        loop = asyncio.get_running_loop()
        self._initial_run = loop.call_later(
            self.initial_delay_seconds, self._spawn_cycle
        )
        self._timer_task = asyncio.create_task(self._timer_loop())
        self._compute_next_run()
        logger.info(
            f"Scheduler started: every {self.interval_minutes} minutes, "
            f"next run {self._next_run.isoformat()}"
        )

    def stop(self) -> None:
        """Cancel future cycles. A cycle already in progress is left to finish."""
        if self._initial_run is not None:
            self._initial_run.cancel()
            self._initial_run = None
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for cycles started by the timer to finish."""
        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_minutes * 60)
            self._spawn_cycle()

    def _spawn_cycle(self) -> None:
        # Cycles run as their own tasks so stop() never cancels one mid-flight
        task = asyncio.create_task(self.run_cycle())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def trigger_manual_run(self) -> bool:
        """
        Run one cycle now.

        Returns:
            False without doing any work if a cycle is already running
        """
        if self._running:
            logger.info("Manual run requested while a cycle is running, skipping")
            return False
        logger.info("Manual cycle triggered")
        return await self.run_cycle()

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            last_run=self._last_run,
            next_run=self._next_run,
            interval_minutes=self.interval_minutes,
        )

    async def run_cycle(self) -> bool:
        """
        Run one full cycle unless one is already in progress.

        Returns:
            True if this call executed a cycle, False if it was skipped
        """
        if self._running:
            logger.info("Cycle already running, skipping")
            return False

        self._running = True
        self._last_run = datetime.now()
        started = time.monotonic()

        try:
            logger.info("=== Starting stock data cycle ===")
            await self.hub.send_scraping_status(
                ScrapingStatus.STARTED,
                "Starting stock data collection...",
                self._next_run,
            )

            try:
                result = await asyncio.to_thread(self.fetcher.fetch)
            except SourceUnavailable as e:
                await self._report_failure(f"Scraping failed: {e}", started)
                return True

            stocks = result.stocks
            updates = self.detector.detect(stocks)
            self.stock_repo.append_transactional(result, updates)

            rules = self.rule_repo.get_active_rules()
            alerts = self.rule_engine.evaluate(stocks, updates, rules)

            await self.hub.broadcast_stock_update(stocks, updates, result)
            for alert in alerts:
                await self.hub.broadcast_alert(alert)
            self.detector.remember_broadcast(stocks)

            self._compute_next_run()
            await self.hub.send_scraping_status(
                ScrapingStatus.SUCCESS,
                f"Processed {len(stocks)} stocks - {len(updates)} changes, "
                f"{len(alerts)} alerts generated",
                self._next_run,
            )

            self._prune_if_due()

            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                f"Cycle completed in {elapsed_ms}ms: {len(stocks)} stocks, "
                f"{len(updates)} changes, {len(alerts)} alerts"
            )
        except Exception as e:
            logger.error(f"Cycle failed: {e}", exc_info=True)
            await self._report_failure(f"Task failed: {e}", started)
        finally:
            self._running = False
            self._compute_next_run()

        return True

    async def _report_failure(self, message: str, started: float) -> None:
        """Persist a failure log row and tell clients. Never raises."""
        logger.error(message)
        failure = ScrapingResult(
            success=False,
            timestamp=datetime.now(),
            error=message,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            self.stock_repo.log_failure(failure)
        except PersistenceFailure as e:
            logger.error(f"Could not record failed cycle: {e}")

        try:
            await self.hub.send_scraping_status(ScrapingStatus.ERROR, message)
        except Exception as e:
            logger.error(f"Could not broadcast cycle failure: {e}")

    def _prune_if_due(self) -> None:
        now = datetime.now()
        if self._last_pruned is not None and now - self._last_pruned < self.prune_interval:
            return
        try:
            deleted = self.stock_repo.prune(self.retention_days, now=now)
        except PersistenceFailure as e:
            logger.error(f"Pruning old data failed: {e}")
            return
        self._last_pruned = now
        logger.info(f"Cleaned data older than {self.retention_days} days: {deleted}")

    def _compute_next_run(self) -> None:
        self._next_run = datetime.now() + timedelta(minutes=self.interval_minutes)
