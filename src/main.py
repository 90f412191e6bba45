"""
Main application entry point.
"""

import asyncio
import logging
import signal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from src.changes.detector import ChangeDetector
from src.config import AppConfig
from src.data.fetcher import StockScreenerFetcher
from src.database.connection import Database
from src.database.repository import AlertRuleRepository, StockRepository
from src.hub.server import DistributionHub
from src.rules.engine import RuleEngine
from src.scheduler import CycleScheduler

logger = logging.getLogger(__name__)


class PulseApp:
    """Wires the pipeline components around one database."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        fetcher: Optional[StockScreenerFetcher] = None,
    ):
        """
        Initialize the app.

        Args:
            db: Initialized database
            config: Application configuration
            fetcher: Snapshot source, built from config when omitted
        """
        self.db = db
        self.config = config

        # Initialize repositories
        self.stock_repo = StockRepository(db)
        self.rule_repo = AlertRuleRepository(db)

        # Initialize services
        self.fetcher = fetcher or StockScreenerFetcher(
            screener=config.source.screener,
            max_stocks=config.source.max_stocks,
            max_retries=config.source.max_retries,
            retry_delay=config.source.retry_delay_seconds,
        )
        self.detector = ChangeDetector(self.stock_repo)
        self.rule_engine = RuleEngine(
            high_gain_threshold=config.alerts.high_gain_threshold
        )
        self.hub = DistributionHub(
            self.stock_repo,
            host=config.websocket.host,
            port=config.websocket.port,
            heartbeat_interval=config.websocket.heartbeat_interval_seconds,
            catch_up_delay=config.websocket.catch_up_delay_seconds,
            send_timeout=config.websocket.send_timeout_seconds,
            latest_limit=config.source.max_stocks,
        )
        self.scheduler = CycleScheduler(
            fetcher=self.fetcher,
            stock_repo=self.stock_repo,
            rule_repo=self.rule_repo,
            detector=self.detector,
            rule_engine=self.rule_engine,
            hub=self.hub,
            interval_minutes=config.schedule.interval_minutes,
            initial_delay_seconds=config.schedule.initial_delay_seconds,
            retention_days=config.retention.days,
            prune_interval_hours=config.retention.prune_interval_hours,
        )

    async def serve(self, stop_event: asyncio.Event) -> None:
        """Run hub and scheduler until stop_event is set."""
        await self.hub.start()
        self.scheduler.start()
        try:
            await stop_event.wait()
        finally:
            logger.info("Shutting down...")
            self.scheduler.stop()
            await self.scheduler.wait_idle()
            await self.hub.close()


async def _run(app: PulseApp) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops
            pass
    await app.serve(stop_event)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Premarket Pulse Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    # Load config
    from src.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    app = PulseApp(db=db, config=config)
    try:
        asyncio.run(_run(app))
    except KeyboardInterrupt:
        pass
    finally:
        db.close()


if __name__ == "__main__":
    main()
