"""Bid validation.

Pure checks of a proposed bid against the current auction state. Nothing
here mutates the auction; acceptance happens in AuctionService.

Checks run in order and the first failure wins:
1. Auction is open (ACTIVE or ENDING_SOON)
2. Auction end time has not passed
3. Amount reaches current bid + minimum increment
4. Bidder does not already hold the winning bid
5. Bidder is not the seller
"""

from typing import List, Sequence

from ..models.money import Money
from ..models.types import Auction, RejectionReason, ValidationResult


def minimum_next_bid(auction: Auction) -> Money:
    """Smallest amount the next bid may have."""
    return auction.current_bid.add(auction.min_increment)


def validate_bid(
    auction: Auction,
    amount: Money,
    bidder_id: str,
    now: int,
) -> ValidationResult:
    """Validate a proposed bid.

    Args:
        auction: Current auction state
        amount: Proposed bid amount
        bidder_id: Who is bidding
        now: Current timestamp in ms

    Returns:
        ValidationResult; a BID_TOO_LOW rejection carries the minimum
        acceptable amount so the caller can prompt a retry.
    """
    if not auction.state.accepts_bids:
        return ValidationResult.rejected(
            RejectionReason.AUCTION_NOT_OPEN,
            f"Auction is not accepting bids (state: {auction.state.name})",
        )

    if auction.end_ts is None or now >= auction.end_ts:
        return ValidationResult.rejected(
            RejectionReason.AUCTION_ALREADY_ENDED,
            "Auction has already ended",
        )

    if amount.currency != auction.currency:
        return ValidationResult.rejected(
            RejectionReason.INVALID_AMOUNT,
            f"Bid currency {amount.currency} does not match auction currency {auction.currency}",
        )

    min_bid = minimum_next_bid(auction)
    if amount < min_bid:
        return ValidationResult.rejected(
            RejectionReason.BID_TOO_LOW,
            f"Bid must be at least {min_bid.format()}",
            min_amount=min_bid,
        )

    if auction.leader_id is not None and auction.leader_id == bidder_id:
        return ValidationResult.rejected(
            RejectionReason.ALREADY_HIGHEST_BIDDER,
            "You are already the highest bidder",
        )

    if bidder_id == auction.seller_id:
        return ValidationResult.rejected(
            RejectionReason.SELLER_CANNOT_BID,
            "Sellers cannot bid on their own auctions",
        )

    return ValidationResult.accepted()


def suggested_bids(auction: Auction, steps_pct: Sequence[int] = (0, 5, 10)) -> List[Money]:
    """Quick-bid amounts: the minimum next bid plus percentage steps above it.

    Duplicates are dropped, order is ascending.
    """
    base = minimum_next_bid(auction)
    suggestions: List[Money] = []
    for pct in sorted(steps_pct):
        candidate = base.multiply_by_ratio(100 + pct, 100)
        if not suggestions or candidate > suggestions[-1]:
            suggestions.append(candidate)
    return suggestions
