"""
Bidinsouk - Auction and bidding engine

The authoritative domain engine behind Bidinsouk marketplace auctions:
auction lifecycle, bid acceptance, proxy (auto) bidding, anti-sniping
extension, and conversion of won auctions into pending orders.
"""

__version__ = "0.1.0"
__author__ = "bidinsouk"

from .config import Config, load_config
from .models.money import Money
from .models.types import (
    AuctionState,
    RejectionReason,
    Rejection,
    Auction,
    Bid,
    AutoBidMandate,
    AuctionSnapshot,
    NotificationEvent,
    BidResult,
    MandateResult,
    CloseResult,
    CancelResult,
    TransitionResult,
)
from .services import (
    AuctionService,
    AuctionStateMachine,
    AutoBidEngine,
    validate_bid,
)
from .storage import AuctionStore
from .scheduler import AuctionScheduler
from .orchestrator import Orchestrator

__all__ = [
    # Config
    "Config",
    "load_config",
    # Types
    "Money",
    "AuctionState",
    "RejectionReason",
    "Rejection",
    "Auction",
    "Bid",
    "AutoBidMandate",
    "AuctionSnapshot",
    "NotificationEvent",
    "BidResult",
    "MandateResult",
    "CloseResult",
    "CancelResult",
    "TransitionResult",
    # Services
    "AuctionService",
    "AuctionStateMachine",
    "AutoBidEngine",
    "validate_bid",
    "AuctionStore",
    "AuctionScheduler",
    "Orchestrator",
]
