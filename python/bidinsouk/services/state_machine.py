"""Auction lifecycle state machine.

States:
    DRAFT -> SCHEDULED -> ACTIVE -> ENDING_SOON -> ENDED
    SCHEDULED / ACTIVE / ENDING_SOON -> CANCELLED

ENDED and CANCELLED are terminal. Every transition works on a copy of the
auction: a rejected transition leaves the caller's object untouched and a
successful one returns the new state in TransitionResult.auction.
"""

import logging
from dataclasses import replace
from typing import Optional

from ..config import AuctionRulesConfig
from ..models.money import Money
from ..models.types import (
    Auction,
    AuctionState,
    RejectionReason,
    TransitionResult,
)

logger = logging.getLogger(__name__)


_CANCELLABLE = (AuctionState.SCHEDULED, AuctionState.ACTIVE, AuctionState.ENDING_SOON)
_OPEN = (AuctionState.ACTIVE, AuctionState.ENDING_SOON)


def _illegal(auction: Auction, action: str, detail: str = "") -> TransitionResult:
    message = f"Cannot {action} auction in state {auction.state.name}"
    if detail:
        message = f"{message}: {detail}"
    return TransitionResult.rejected(RejectionReason.ILLEGAL_STATE_TRANSITION, message)


class AuctionStateMachine:
    """Enforces legal auction transitions and their timing guards."""

    def __init__(self, rules: AuctionRulesConfig):
        self.rules = rules
        self.ending_soon_threshold_ms = rules.ending_soon_threshold_minutes * 60_000
        self.schedule_grace_ms = rules.schedule_grace_seconds * 1000

    def schedule(
        self,
        auction: Auction,
        start_ts: int,
        end_ts: int,
        now: int,
    ) -> TransitionResult:
        """DRAFT -> SCHEDULED with a bidding window."""
        if auction.state != AuctionState.DRAFT:
            return _illegal(auction, "schedule")

        if end_ts <= start_ts:
            return TransitionResult.rejected(
                RejectionReason.INVALID_SCHEDULE_WINDOW,
                "End time must be after start time",
            )

        if start_ts < now - self.schedule_grace_ms:
            return TransitionResult.rejected(
                RejectionReason.INVALID_SCHEDULE_WINDOW,
                "Start time cannot be in the past",
            )

        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                state=AuctionState.SCHEDULED,
                start_ts=start_ts,
                end_ts=end_ts,
                updated_ts=now,
            ),
        )

    def activate(self, auction: Auction, now: int) -> TransitionResult:
        """SCHEDULED -> ACTIVE once the start time is reached."""
        if auction.state != AuctionState.SCHEDULED:
            return _illegal(auction, "activate")

        if now < auction.start_ts:
            return _illegal(auction, "activate", "start time not reached")

        return TransitionResult(
            success=True,
            auction=replace(auction, state=AuctionState.ACTIVE, updated_ts=now),
        )

    def tick_to_ending_soon(self, auction: Auction, now: int) -> TransitionResult:
        """ACTIVE -> ENDING_SOON when the end is within the threshold.

        Visibility signal only; bidding rules are identical in both states.
        """
        if auction.state != AuctionState.ACTIVE:
            return _illegal(auction, "mark ending soon")

        if auction.end_ts - now > self.ending_soon_threshold_ms:
            return _illegal(auction, "mark ending soon", "end is not within threshold")

        return TransitionResult(
            success=True,
            auction=replace(auction, state=AuctionState.ENDING_SOON, updated_ts=now),
        )

    def in_sniping_window(self, auction: Auction, bid_placed_ts: int) -> bool:
        """Whether a bid placed at bid_placed_ts falls in the anti-sniping window."""
        if not auction.has_anti_sniping or auction.end_ts is None:
            return False
        time_left = auction.end_ts - bid_placed_ts
        return 0 < time_left <= auction.anti_sniping_window_ms

    def extend(
        self,
        auction: Auction,
        now: int,
        bid_placed_ts: int,
        bid_id: Optional[str] = None,
    ) -> TransitionResult:
        """Push end_ts forward for a bid that landed inside the sniping window.

        Extending twice for the same bid is a successful no-op
        (changed=False). The extension count is capped by
        auction.max_extensions.
        """
        if bid_id is not None and bid_id == auction.last_extension_bid_id:
            return TransitionResult(success=True, auction=auction, changed=False)

        if auction.state not in _OPEN:
            return _illegal(auction, "extend")

        if not self.in_sniping_window(auction, bid_placed_ts):
            return _illegal(auction, "extend", "bid is outside the anti-sniping window")

        if auction.extension_count >= auction.max_extensions:
            return TransitionResult.rejected(
                RejectionReason.EXTENSION_LIMIT_REACHED,
                f"Auction already extended {auction.extension_count} times",
            )

        new_end = auction.end_ts + auction.anti_sniping_extension_ms
        logger.debug(
            f"Extending auction {auction.auction_id}: {auction.end_ts} -> {new_end}"
        )
        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                end_ts=new_end,
                extension_count=auction.extension_count + 1,
                last_extension_bid_id=bid_id,
                updated_ts=now,
            ),
        )

    def extend_manually(self, auction: Auction, duration_ms: int, now: int) -> TransitionResult:
        """Push end_ts forward on request of the seller or an admin.

        Counts in extension_count but is not limited by max_extensions.
        An ENDING_SOON auction whose new end is beyond the threshold goes
        back to ACTIVE.
        """
        if auction.state not in _OPEN:
            return _illegal(auction, "extend")

        if now >= auction.end_ts:
            return _illegal(auction, "extend", "end time has passed")

        if duration_ms <= 0:
            return TransitionResult.rejected(
                RejectionReason.INVALID_EXTENSION,
                "Extension duration must be positive",
            )

        new_end = auction.end_ts + duration_ms
        state = auction.state
        if state == AuctionState.ENDING_SOON and new_end - now > self.ending_soon_threshold_ms:
            state = AuctionState.ACTIVE

        logger.debug(
            f"Manually extending auction {auction.auction_id}: {auction.end_ts} -> {new_end}"
        )
        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                state=state,
                end_ts=new_end,
                extension_count=auction.extension_count + 1,
                updated_ts=now,
            ),
        )

    def end(self, auction: Auction, now: int) -> TransitionResult:
        """ACTIVE / ENDING_SOON -> ENDED once end_ts has passed.

        A winner is recorded only when there are bids and the reserve (if
        any) is met; otherwise the auction is passed.
        """
        if auction.state not in _OPEN:
            return _illegal(auction, "end")

        if now < auction.end_ts:
            return _illegal(auction, "end", "end time not reached")

        winner_id = auction.leader_id if auction.qualifies_for_win() else None
        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                state=AuctionState.ENDED,
                winner_id=winner_id,
                updated_ts=now,
            ),
        )

    def end_with_buy_now(
        self,
        auction: Auction,
        buyer_id: str,
        price: Money,
        now: int,
    ) -> TransitionResult:
        """ACTIVE / ENDING_SOON -> ENDED immediately at the buy-now price.

        The caller records the matching bid; this transition accounts for it
        in bid_count.
        """
        if auction.state not in _OPEN:
            return _illegal(auction, "buy now on")

        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                state=AuctionState.ENDED,
                current_bid=price,
                bid_count=auction.bid_count + 1,
                leader_id=buyer_id,
                winner_id=buyer_id,
                end_ts=now,
                updated_ts=now,
            ),
        )

    def cancel(
        self,
        auction: Auction,
        reason: str,
        admin_override: bool = False,
        now: int = 0,
    ) -> TransitionResult:
        """Cancel a scheduled or running auction.

        Auctions that already have bids need admin_override.
        """
        if auction.state not in _CANCELLABLE:
            return _illegal(auction, "cancel")

        if auction.bid_count > 0 and not admin_override:
            return TransitionResult.rejected(
                RejectionReason.CANNOT_CANCEL_WITH_BIDS,
                f"Auction has {auction.bid_count} bids; cancelling requires an admin override",
            )

        return TransitionResult(
            success=True,
            auction=replace(
                auction,
                state=AuctionState.CANCELLED,
                cancel_reason=reason,
                winner_id=None,
                updated_ts=now or auction.updated_ts,
            ),
        )
