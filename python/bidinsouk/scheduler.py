"""Time-driven auction sweep.

Periodically finds auctions whose start time, ending-soon threshold or end
time has passed and advances them through AuctionService. Each auction is
advanced under its own lock, so the sweep never races a bid.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from .config import SchedulerConfig
from .models.types import AuctionState, current_ts_ms
from .services.auction_service import AuctionService
from .services.ports import StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""
    ts: int
    scheduled_started: int = 0
    marked_ending_soon: int = 0
    ended: int = 0
    orders_created: int = 0
    errors: int = 0

    @property
    def total_transitions(self) -> int:
        return self.scheduled_started + self.marked_ending_soon + self.ended

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SchedulerState:
    """Running totals of the scheduler."""
    is_running: bool = False
    sweeps: int = 0
    last_sweep_ts: Optional[int] = None
    scheduled_started: int = 0
    marked_ending_soon: int = 0
    ended: int = 0
    orders_created: int = 0
    errors: int = 0


class AuctionScheduler:
    """Drives SCHEDULED -> ACTIVE -> ENDING_SOON -> ENDED on a timer."""

    def __init__(
        self,
        config: SchedulerConfig,
        service: AuctionService,
        store,
        clock: Callable[[], int] = current_ts_ms,
    ):
        self.config = config
        self.service = service
        self.store = store
        self.clock = clock
        self.state = SchedulerState()
        self._stop_event: Optional[asyncio.Event] = None

    async def sweep(self, now: Optional[int] = None) -> SweepReport:
        """Advance every due auction once."""
        if now is None:
            now = self.clock()
        report = SweepReport(ts=now)

        try:
            due = self.store.list_due_auctions(
                now,
                self.service.state_machine.ending_soon_threshold_ms,
                self.config.batch_size,
            )
        except StoreUnavailable as e:
            logger.error(f"Sweep could not list due auctions: {e}")
            report.errors += 1
            due = []

        for auction_id in due:
            try:
                entered = await self.service.advance_auction(auction_id, now)
            except Exception as e:
                logger.error(f"Sweep failed on auction {auction_id}: {e}")
                report.errors += 1
                continue

            if AuctionState.ACTIVE in entered:
                report.scheduled_started += 1
            if AuctionState.ENDING_SOON in entered:
                report.marked_ending_soon += 1
            if AuctionState.ENDED in entered:
                report.ended += 1

        if self.config.retry_orders:
            report.orders_created = await self.service.retry_pending_orders(
                now, self.config.batch_size
            )

        self._record(report)
        if report.total_transitions or report.orders_created:
            logger.info(
                f"Sweep at {now}: started={report.scheduled_started} "
                f"ending_soon={report.marked_ending_soon} ended={report.ended} "
                f"orders={report.orders_created}"
            )
        return report

    def _record(self, report: SweepReport) -> None:
        self.state.sweeps += 1
        self.state.last_sweep_ts = report.ts
        self.state.scheduled_started += report.scheduled_started
        self.state.marked_ending_soon += report.marked_ending_soon
        self.state.ended += report.ended
        self.state.orders_created += report.orders_created
        self.state.errors += report.errors

    def _stop_signal(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    async def run(self) -> None:
        """Sweep every sweep_interval_seconds until stop() is called.

        A stop() that arrives before the loop gets its first turn is kept,
        and run() returns without sweeping.
        """
        stop_event = self._stop_signal()
        self.state.is_running = True
        logger.info(f"Scheduler started (interval={self.config.sweep_interval_seconds}s)")

        try:
            while not stop_event.is_set():
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error(f"Sweep error: {e}")
                    self.state.errors += 1

                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.sweep_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._stop_event = None
            self.state.is_running = False
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current sweep, or before its first one."""
        self._stop_signal().set()

    def get_stats(self) -> dict:
        """Get scheduler statistics."""
        return asdict(self.state)
