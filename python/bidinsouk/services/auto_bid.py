"""Proxy (auto) bid resolution.

When a bid is accepted, standing mandates held by other bidders get a
chance to answer it. Resolution follows English-auction proxy bidding:

- The competing mandate with the highest max answers; ties on max go to
  the mandate created first.
- It bids just enough to beat every rival it can see (the leader's
  standing, the leader's own mandate, other competing mandates), i.e.
  min(max, rival ceiling + its increment).
- When it ties the rival ceiling exactly it bids the tied max; no
  increment is needed to beat an equal competitor created later.
- If the leader's own mandate outranks it, the leader's mandate answers
  instead and the challenger is exhausted.
- A mandate that can no longer reach current bid + minimum increment is
  deactivated.

Every iteration either places a bid that clears all other mandates or
deactivates one, so the loop ends after at most one pass per mandate.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from ..models.money import Money
from ..models.types import Auction, AutoBidMandate, Bid, new_id
from .bid_validator import minimum_next_bid

logger = logging.getLogger(__name__)


@dataclass
class AutoBidResolution:
    """Result of running proxy resolution once."""
    auction: Auction
    bids: List[Bid] = field(default_factory=list)
    deactivated: List[AutoBidMandate] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.bids) or bool(self.deactivated)


def _rank_key(mandate: AutoBidMandate):
    return (-mandate.max_amount.amount, mandate.created_ts, mandate.mandate_id)


def _outranks(first: AutoBidMandate, second: AutoBidMandate) -> bool:
    return _rank_key(first) < _rank_key(second)


class AutoBidEngine:
    """Resolves auto-bid mandates into automatic bids."""

    def __init__(self, id_factory: Callable[[], str] = new_id):
        self._new_id = id_factory

    def resolve(
        self,
        auction: Auction,
        mandates: Sequence[AutoBidMandate],
        now: int,
    ) -> AutoBidResolution:
        """Run proxy resolution against the current leader.

        Args:
            auction: Auction after the triggering bid was applied
            mandates: Mandates for this auction (inactive ones are skipped)
            now: Current timestamp in ms, used as the automatic bids' time

        Returns:
            AutoBidResolution with the updated auction copy, the automatic
            bids placed in order, and the mandates that were deactivated.
        """
        result = AutoBidResolution(auction=auction)
        if not auction.state.accepts_bids:
            return result

        active: Dict[str, AutoBidMandate] = {
            m.mandate_id: m
            for m in mandates
            if m.active and m.auction_id == auction.auction_id
        }

        for _ in range(len(active) + 1):
            current = result.auction
            floor = minimum_next_bid(current)
            leader_mandate = self._mandate_of(active, current.leader_id)

            contenders = []
            for mandate in list(active.values()):
                if mandate.bidder_id == current.leader_id:
                    continue
                if mandate.max_amount >= floor:
                    contenders.append(mandate)
                else:
                    self._deactivate(active, mandate, result)

            if not contenders:
                break

            contenders.sort(key=_rank_key)
            best = contenders[0]

            if leader_mandate is not None and _outranks(leader_mandate, best):
                # The leader's own proxy answers and the challenger is spent
                if leader_mandate.max_amount == best.max_amount:
                    target = best.max_amount
                else:
                    target = min(
                        leader_mandate.max_amount,
                        best.max_amount.add(leader_mandate.increment),
                    )
                self._deactivate(active, best, result)
                if target > current.current_bid:
                    self._place(result, leader_mandate, max(target, floor), now)
                continue

            ceiling = current.current_bid
            if leader_mandate is not None and leader_mandate.max_amount > ceiling:
                ceiling = leader_mandate.max_amount
            for rival in contenders[1:]:
                if rival.max_amount > ceiling:
                    ceiling = rival.max_amount

            if ceiling == best.max_amount:
                amount = best.max_amount
            else:
                amount = min(best.max_amount, ceiling.add(best.increment))
                amount = max(amount, floor)
            self._place(result, best, amount, now)

        if result.bids:
            logger.debug(
                f"Auto-bid resolution on {auction.auction_id}: "
                f"{len(result.bids)} bids, {len(result.deactivated)} mandates exhausted, "
                f"leader={result.auction.leader_id} at {result.auction.current_bid.format()}"
            )
        return result

    @staticmethod
    def _mandate_of(
        active: Dict[str, AutoBidMandate],
        bidder_id: Optional[str],
    ) -> Optional[AutoBidMandate]:
        if bidder_id is None:
            return None
        for mandate in active.values():
            if mandate.bidder_id == bidder_id:
                return mandate
        return None

    @staticmethod
    def _deactivate(
        active: Dict[str, AutoBidMandate],
        mandate: AutoBidMandate,
        result: AutoBidResolution,
    ) -> None:
        active.pop(mandate.mandate_id, None)
        result.deactivated.append(replace(mandate, active=False))

    def _place(
        self,
        result: AutoBidResolution,
        mandate: AutoBidMandate,
        amount: Money,
        now: int,
    ) -> None:
        auction = result.auction
        bid = Bid(
            bid_id=self._new_id(),
            auction_id=auction.auction_id,
            bidder_id=mandate.bidder_id,
            amount=amount,
            placed_ts=now,
            is_automatic=True,
            proxy_max_amount=mandate.max_amount,
        )
        result.bids.append(bid)
        result.auction = replace(
            auction,
            current_bid=amount,
            bid_count=auction.bid_count + 1,
            leader_id=mandate.bidder_id,
            updated_ts=now,
        )
