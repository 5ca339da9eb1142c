"""Services for the Bidinsouk auction engine."""

from .bid_validator import validate_bid, minimum_next_bid, suggested_bids
from .state_machine import AuctionStateMachine
from .auto_bid import AutoBidEngine, AutoBidResolution
from .ports import (
    AuctionRepository,
    NotificationPort,
    OrderPort,
    StoreUnavailable,
    OrderCreationError,
)
from .auction_service import AuctionService, ServiceStats
from .notifier import LoggingNotifier, WebhookNotifier, BroadcastNotifier, create_notifier
from .orders import StoreOrderPort, HttpOrderPort

__all__ = [
    "validate_bid",
    "minimum_next_bid",
    "suggested_bids",
    "AuctionStateMachine",
    "AutoBidEngine",
    "AutoBidResolution",
    "AuctionRepository",
    "NotificationPort",
    "OrderPort",
    "StoreUnavailable",
    "OrderCreationError",
    "AuctionService",
    "ServiceStats",
    "LoggingNotifier",
    "WebhookNotifier",
    "BroadcastNotifier",
    "create_notifier",
    "StoreOrderPort",
    "HttpOrderPort",
]
