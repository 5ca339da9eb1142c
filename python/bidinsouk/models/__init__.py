"""Data models for the Bidinsouk auction engine."""

from .money import (
    Money,
    MoneyError,
    CurrencyMismatch,
    NegativeAmount,
    AmountOverflow,
)
from .types import (
    AuctionState,
    ErrorCategory,
    RejectionReason,
    Rejection,
    EventType,
    ActivityType,
    Auction,
    Bid,
    AutoBidMandate,
    AuctionActivity,
    NotificationEvent,
    AuctionSnapshot,
    ValidationResult,
    TransitionResult,
    BidResult,
    MandateResult,
    CloseResult,
    CancelResult,
)

__all__ = [
    "Money",
    "MoneyError",
    "CurrencyMismatch",
    "NegativeAmount",
    "AmountOverflow",
    "AuctionState",
    "ErrorCategory",
    "RejectionReason",
    "Rejection",
    "EventType",
    "ActivityType",
    "Auction",
    "Bid",
    "AutoBidMandate",
    "AuctionActivity",
    "NotificationEvent",
    "AuctionSnapshot",
    "ValidationResult",
    "TransitionResult",
    "BidResult",
    "MandateResult",
    "CloseResult",
    "CancelResult",
]
