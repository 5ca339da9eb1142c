"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import List

import pytest

# Add the python package to the path
PACKAGE_DIR = Path(__file__).parent.parent / "python"
sys.path.insert(0, str(PACKAGE_DIR))

from bidinsouk.config import Config, DatabaseConfig
from bidinsouk.models.money import Money
from bidinsouk.models.types import (
    Auction,
    AuctionState,
    AutoBidMandate,
    NotificationEvent,
)
from bidinsouk.services.auction_service import AuctionService
from bidinsouk.services.ports import OrderCreationError
from bidinsouk.storage.auction_store import AuctionStore


T0 = 1767225600000  # 2026-01-01 00:00:00 UTC
MINUTE = 60_000
HOUR = 60 * MINUTE
DAY = 24 * HOUR
END = T0 + DAY


class RecordingNotifier:
    """Keeps every event it is given."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    async def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class FailingNotifier:
    """Raises on every event."""

    def __init__(self):
        self.attempts = 0

    async def notify(self, event: NotificationEvent) -> None:
        self.attempts += 1
        raise ConnectionError("notification backend down")


class RecordingOrderPort:
    """Order port that records calls and can be told to fail."""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def create_pending_order(self, auction_id: str, winner_id: str, amount: Money) -> str:
        self.calls.append((auction_id, winner_id, amount))
        if self.fail:
            raise OrderCreationError("order service unavailable")
        return f"ord-{auction_id[:8]}-{len(self.calls)}"


@pytest.fixture
def sample_config() -> Config:
    """Configuration with in-memory databases and the scheduler off."""
    config = Config()
    config.database = DatabaseConfig(auctions_db=":memory:", analytics_db=":memory:")
    config.scheduler.enabled = False
    config.rules.default_min_increment = 10
    config.rules.max_extensions = 3
    config.service.lock_timeout_seconds = 0.2
    return config


@pytest.fixture
def make_auction():
    """Factory for an ACTIVE auction, priced in minor units."""
    def _make(**overrides) -> Auction:
        values = dict(
            auction_id="auc-1",
            product_id="prod-1",
            seller_id="seller",
            starting_price=Money(100),
            current_bid=Money(100),
            min_increment=Money(10),
            max_extensions=3,
            state=AuctionState.ACTIVE,
            start_ts=T0,
            end_ts=END,
            anti_sniping_window_ms=2 * MINUTE,
            anti_sniping_extension_ms=5 * MINUTE,
            created_ts=T0 - HOUR,
            updated_ts=T0,
        )
        values.update(overrides)
        return Auction(**values)
    return _make


@pytest.fixture
def make_mandate():
    """Factory for auto-bid mandates."""
    def _make(bidder_id: str, max_amount: int, created_ts: int,
              increment: int = 10, auction_id: str = "auc-1") -> AutoBidMandate:
        return AutoBidMandate(
            mandate_id=f"m-{bidder_id}-{created_ts}",
            auction_id=auction_id,
            bidder_id=bidder_id,
            max_amount=Money(max_amount),
            increment=Money(increment),
            created_ts=created_ts,
        )
    return _make


@pytest.fixture
def store(sample_config):
    """Connected in-memory auction store."""
    auction_store = AuctionStore(sample_config.database)
    auction_store.connect()
    yield auction_store
    auction_store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def order_port() -> RecordingOrderPort:
    return RecordingOrderPort()


@pytest.fixture
def service(sample_config, store, notifier, order_port) -> AuctionService:
    return AuctionService(sample_config, store, notifier, order_port)


@pytest.fixture
def open_auction(service):
    """Create, schedule and start an auction through the service.

    Returns an async factory; keyword arguments go to create_auction.
    The auction runs from T0 to END.
    """
    async def _open(**kwargs) -> Auction:
        kwargs.setdefault("seller_id", "seller")
        kwargs.setdefault("product_id", "prod-1")
        kwargs.setdefault("starting_price", Money(100))
        created = await service.create_auction(now=T0 - MINUTE, **kwargs)
        assert created.success, created.rejection
        auction_id = created.auction.auction_id

        scheduled = await service.schedule_auction(auction_id, T0, END, T0 - MINUTE)
        assert scheduled.success, scheduled.rejection

        entered = await service.advance_auction(auction_id, T0)
        assert entered == [AuctionState.ACTIVE]
        return service.store.load_auction(auction_id)
    return _open
