"""Core data types for the Bidinsouk auction engine."""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, List, Dict, Any
import time
import uuid

from .money import Money


class AuctionState(Enum):
    """Auction lifecycle states."""
    DRAFT = auto()
    SCHEDULED = auto()
    ACTIVE = auto()
    ENDING_SOON = auto()
    ENDED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (AuctionState.ENDED, AuctionState.CANCELLED)

    @property
    def accepts_bids(self) -> bool:
        return self in (AuctionState.ACTIVE, AuctionState.ENDING_SOON)


class ErrorCategory(Enum):
    """How a rejection should be treated by callers."""
    VALIDATION = auto()
    STATE = auto()
    INFRASTRUCTURE = auto()


class RejectionReason(Enum):
    """Typed reasons an operation was refused."""
    # Validation
    AUCTION_NOT_FOUND = auto()
    AUCTION_NOT_OPEN = auto()
    AUCTION_ALREADY_ENDED = auto()
    BID_TOO_LOW = auto()
    ALREADY_HIGHEST_BIDDER = auto()
    SELLER_CANNOT_BID = auto()
    MANDATE_TOO_LOW = auto()
    INVALID_AMOUNT = auto()
    BUY_NOW_NOT_AVAILABLE = auto()
    INVALID_EXTENSION = auto()
    # State
    ILLEGAL_STATE_TRANSITION = auto()
    INVALID_SCHEDULE_WINDOW = auto()
    CANNOT_CANCEL_WITH_BIDS = auto()
    EXTENSION_LIMIT_REACHED = auto()
    # Infrastructure
    BUSY = auto()
    UNAVAILABLE = auto()

    @property
    def category(self) -> ErrorCategory:
        if self in _STATE_REASONS:
            return ErrorCategory.STATE
        if self in _INFRASTRUCTURE_REASONS:
            return ErrorCategory.INFRASTRUCTURE
        return ErrorCategory.VALIDATION

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.INFRASTRUCTURE


_STATE_REASONS = frozenset({
    RejectionReason.ILLEGAL_STATE_TRANSITION,
    RejectionReason.INVALID_SCHEDULE_WINDOW,
    RejectionReason.CANNOT_CANCEL_WITH_BIDS,
    RejectionReason.EXTENSION_LIMIT_REACHED,
})

_INFRASTRUCTURE_REASONS = frozenset({
    RejectionReason.BUSY,
    RejectionReason.UNAVAILABLE,
})


@dataclass
class Rejection:
    """Why an operation did not happen."""
    reason: RejectionReason
    message: str
    min_amount: Optional[Money] = None

    @property
    def category(self) -> ErrorCategory:
        return self.reason.category

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.name,
            "category": self.category.name,
            "retryable": self.reason.retryable,
            "message": self.message,
            "min_amount": self.min_amount.to_dict() if self.min_amount else None,
        }


class EventType(Enum):
    """Notification events emitted to bidders and sellers."""
    BID_ACCEPTED = auto()
    OUTBID = auto()
    AUCTION_EXTENDED = auto()
    AUCTION_WON = auto()
    AUCTION_PASSED = auto()
    AUCTION_CANCELLED = auto()
    AUCTION_STARTED = auto()
    AUCTION_ENDING_SOON = auto()


class ActivityType(Enum):
    """Audit log entry types."""
    CREATED = auto()
    SCHEDULED = auto()
    STARTED = auto()
    ENDING_SOON = auto()
    BID_PLACED = auto()
    AUTO_BID_PLACED = auto()
    MANDATE_CREATED = auto()
    EXTENDED = auto()
    ENDED = auto()
    CANCELLED = auto()
    BUY_NOW_EXECUTED = auto()
    ORDER_CREATED = auto()


@dataclass
class Auction:
    """Aggregate root for one auction and its bidding state."""
    auction_id: str
    product_id: str
    seller_id: str
    starting_price: Money
    current_bid: Money
    min_increment: Money
    max_extensions: int
    state: AuctionState = AuctionState.DRAFT
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    reserve_price: Optional[Money] = None
    buy_now_price: Optional[Money] = None
    bid_count: int = 0
    leader_id: Optional[str] = None
    winner_id: Optional[str] = None
    anti_sniping_window_ms: Optional[int] = None
    anti_sniping_extension_ms: Optional[int] = None
    extension_count: int = 0
    last_extension_bid_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    order_id: Optional[str] = None
    created_ts: int = 0
    updated_ts: int = 0

    @property
    def currency(self) -> str:
        return self.starting_price.currency

    @property
    def reserve_met(self) -> bool:
        """True when there is no reserve or the current bid has reached it."""
        if self.reserve_price is None:
            return True
        return self.bid_count > 0 and self.current_bid >= self.reserve_price

    @property
    def has_anti_sniping(self) -> bool:
        return bool(self.anti_sniping_window_ms) and bool(self.anti_sniping_extension_ms)

    def qualifies_for_win(self) -> bool:
        """Whether ending now would produce a winner."""
        return self.bid_count > 0 and self.leader_id is not None and self.reserve_met

    def time_remaining_ms(self, now: int) -> Optional[int]:
        if self.end_ts is None:
            return None
        if self.state.is_terminal:
            return 0
        return max(0, self.end_ts - now)


@dataclass
class Bid:
    """An accepted bid. Never edited after it is stored."""
    bid_id: str
    auction_id: str
    bidder_id: str
    amount: Money
    placed_ts: int
    is_automatic: bool = False
    proxy_max_amount: Optional[Money] = None

    def to_dict(self) -> dict:
        return {
            "bid_id": self.bid_id,
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "amount": self.amount.to_dict(),
            "placed_ts": self.placed_ts,
            "is_automatic": self.is_automatic,
        }


@dataclass
class AutoBidMandate:
    """A standing maximum a bidder authorizes the engine to bid up to."""
    mandate_id: str
    auction_id: str
    bidder_id: str
    max_amount: Money
    increment: Money
    created_ts: int
    active: bool = True


@dataclass
class AuctionActivity:
    """Audit log entry."""
    auction_id: str
    activity_type: ActivityType
    ts: int
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationEvent:
    """Outbound event; delivery is best effort."""
    event_type: EventType
    auction_id: str
    ts: int
    recipients: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.name,
            "auction_id": self.auction_id,
            "ts": self.ts,
            "recipients": list(self.recipients),
            "payload": dict(self.payload),
        }


@dataclass
class AuctionSnapshot:
    """Read-only projection of an auction for display."""
    auction_id: str
    state: AuctionState
    current_bid: Money
    min_next_bid: Money
    bid_count: int
    leader_id: Optional[str]
    winner_id: Optional[str]
    reserve_met: bool
    start_ts: Optional[int]
    end_ts: Optional[int]
    time_remaining_ms: Optional[int]
    extension_count: int
    buy_now_price: Optional[Money] = None

    def to_dict(self) -> dict:
        return {
            "auction_id": self.auction_id,
            "state": self.state.name,
            "current_bid": self.current_bid.to_dict(),
            "min_next_bid": self.min_next_bid.to_dict(),
            "bid_count": self.bid_count,
            "leader_id": self.leader_id,
            "winner_id": self.winner_id,
            "reserve_met": self.reserve_met,
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "time_remaining_ms": self.time_remaining_ms,
            "extension_count": self.extension_count,
            "buy_now_price": self.buy_now_price.to_dict() if self.buy_now_price else None,
        }


# -----------------------------------------------------------------------------
# Outcomes
# -----------------------------------------------------------------------------

@dataclass
class ValidationResult:
    """Outcome of validating a proposed bid."""
    ok: bool
    rejection: Optional[Rejection] = None

    @staticmethod
    def accepted() -> "ValidationResult":
        return ValidationResult(ok=True)

    @staticmethod
    def rejected(
        reason: RejectionReason,
        message: str,
        min_amount: Optional[Money] = None,
    ) -> "ValidationResult":
        return ValidationResult(ok=False, rejection=Rejection(reason, message, min_amount))


@dataclass
class TransitionResult:
    """Outcome of a state machine transition.

    On success ``auction`` is a new object; the input auction is never
    modified. ``changed`` is False for idempotent no-ops.
    """
    success: bool
    auction: Optional[Auction] = None
    rejection: Optional[Rejection] = None
    changed: bool = True

    @staticmethod
    def rejected(reason: RejectionReason, message: str) -> "TransitionResult":
        return TransitionResult(success=False, rejection=Rejection(reason, message), changed=False)


@dataclass
class BidResult:
    """Outcome of place_bid / buy_now.

    ``bid`` is the final accepted bid, which is an automatic counter-bid
    when a standing mandate answered. ``own_bid`` is the caller's bid.
    ``placed_bids`` holds both and any bids between, in acceptance order.
    """
    success: bool
    bid: Optional[Bid] = None
    own_bid: Optional[Bid] = None
    auction: Optional[Auction] = None
    placed_bids: List[Bid] = field(default_factory=list)
    was_extended: bool = False
    extension_rejection: Optional[Rejection] = None
    rejection: Optional[Rejection] = None

    @property
    def auto_bids_triggered(self) -> int:
        return sum(1 for b in self.placed_bids if b.is_automatic)


@dataclass
class MandateResult:
    """Outcome of create_auto_bid_mandate."""
    success: bool
    mandate: Optional[AutoBidMandate] = None
    auction: Optional[Auction] = None
    placed_bids: List[Bid] = field(default_factory=list)
    rejection: Optional[Rejection] = None


@dataclass
class CloseResult:
    """Outcome of close_auction."""
    success: bool
    auction: Optional[Auction] = None
    winner_id: Optional[str] = None
    order_id: Optional[str] = None
    rejection: Optional[Rejection] = None


@dataclass
class CancelResult:
    """Outcome of cancel_auction."""
    success: bool
    auction: Optional[Auction] = None
    notified_bidders: List[str] = field(default_factory=list)
    rejection: Optional[Rejection] = None


def new_id() -> str:
    """Generate a new entity identifier."""
    return uuid.uuid4().hex


def current_ts_ms() -> int:
    """Get current timestamp in milliseconds."""
    return int(time.time() * 1000)
