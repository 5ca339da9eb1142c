"""Runtime wiring for the Bidinsouk auction engine.

Coordinates:
- Auction store (SQLite)
- Notification chain
- Order backend
- Auction service
- Time-driven scheduler
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .config import Config
from .scheduler import AuctionScheduler
from .services.auction_service import AuctionService
from .services.notifier import BroadcastNotifier, create_notifier, lifecycle_members
from .services.orders import HttpOrderPort, StoreOrderPort
from .storage.auction_store import AuctionStore
from .storage.analytics_store import AnalyticsStore

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorState:
    """Current state of the orchestrator."""
    is_running: bool = False
    scheduler_enabled: bool = False


class Orchestrator:
    """Builds and owns the long-lived components of one engine instance."""

    def __init__(self, config: Config, notifier: Optional[BroadcastNotifier] = None):
        self.config = config

        self.store = AuctionStore(config.database)
        self.notifier = notifier or create_notifier(config.notifications)

        if config.orders.backend == "http":
            self.orders = HttpOrderPort(config.orders)
        else:
            self.orders = StoreOrderPort(self.store)

        self.service = AuctionService(config, self.store, self.notifier, self.orders)
        self.scheduler = AuctionScheduler(config.scheduler, self.service, self.store)

        self.state = OrchestratorState()
        self._scheduler_task: Optional[asyncio.Task] = None

    async def start(self, run_scheduler: Optional[bool] = None) -> None:
        """Open storage and HTTP sessions; optionally start the sweep loop."""
        if run_scheduler is None:
            run_scheduler = self.config.scheduler.enabled

        logger.info("Starting orchestrator")
        self.store.connect()
        for member in lifecycle_members(self.notifier):
            await member.start()
        if isinstance(self.orders, HttpOrderPort):
            await self.orders.start()

        if run_scheduler:
            self._scheduler_task = asyncio.create_task(self.scheduler.run())
        self.state.is_running = True
        self.state.scheduler_enabled = run_scheduler

    async def stop(self) -> None:
        """Stop the sweep loop and release resources."""
        logger.info("Stopping orchestrator")
        self.state.is_running = False

        if self._scheduler_task is not None:
            self.scheduler.stop()
            await self._scheduler_task
            self._scheduler_task = None

        if isinstance(self.orders, HttpOrderPort):
            await self.orders.stop()
        for member in lifecycle_members(self.notifier):
            await member.stop()
        self.store.close()

    def build_report(self, top: int = 10) -> dict:
        """Refresh the DuckDB copy of the ledger and run the analytics report."""
        analytics = AnalyticsStore(self.config.database)
        analytics.connect()
        try:
            analytics.refresh(self.store.fetch_all_auctions(), self.store.fetch_all_bids())
            return analytics.report(top)
        finally:
            analytics.close()

    def get_stats(self) -> dict:
        """Get orchestrator statistics."""
        return {
            "is_running": self.state.is_running,
            "scheduler_enabled": self.state.scheduler_enabled,
            "service": self.service.get_stats(),
            "scheduler": self.scheduler.get_stats(),
        }
