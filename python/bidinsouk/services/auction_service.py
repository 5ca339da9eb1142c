"""Auction service.

The single entry point that mutates auctions. Each operation on an auction
runs under that auction's lock and inside one store transaction:

    load -> validate -> apply -> auto-bid resolution -> extension -> save

Notifications and order creation happen after the commit. Their failures
are logged and never undo the committed change; a won auction whose order
could not be created is picked up again by retry_pending_orders().

Rejections are returned as typed results, never raised.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..config import Config
from ..models.money import Money
from ..models.types import (
    ActivityType,
    Auction,
    AuctionActivity,
    AuctionSnapshot,
    AuctionState,
    AutoBidMandate,
    Bid,
    BidResult,
    CancelResult,
    CloseResult,
    ErrorCategory,
    EventType,
    MandateResult,
    NotificationEvent,
    Rejection,
    RejectionReason,
    TransitionResult,
    new_id,
)
from .auto_bid import AutoBidEngine
from .bid_validator import minimum_next_bid, suggested_bids, validate_bid
from .ports import AuctionRepository, NotificationPort, OrderPort, StoreUnavailable
from .state_machine import AuctionStateMachine

logger = logging.getLogger(__name__)


class OperationRejected(Exception):
    """Internal signal that aborts an operation and rolls back its transaction."""

    def __init__(self, rejection: Rejection):
        super().__init__(rejection.message)
        self.rejection = rejection


def _reject(reason: RejectionReason, message: str, min_amount: Optional[Money] = None):
    raise OperationRejected(Rejection(reason, message, min_amount))


@dataclass
class ServiceStats:
    """Counters since the service was created."""
    bids_accepted: int = 0
    auto_bids_placed: int = 0
    rejections: int = 0
    extensions: int = 0
    auctions_ended: int = 0
    orders_created: int = 0
    order_failures: int = 0
    notification_failures: int = 0


class AuctionService:
    """Serialized, transactional operations on auctions."""

    def __init__(
        self,
        config: Config,
        store: AuctionRepository,
        notifier: NotificationPort,
        orders: OrderPort,
        state_machine: Optional[AuctionStateMachine] = None,
        auto_bid_engine: Optional[AutoBidEngine] = None,
        id_factory: Callable[[], str] = new_id,
    ):
        self.config = config
        self.store = store
        self.notifier = notifier
        self.orders = orders
        self.state_machine = state_machine or AuctionStateMachine(config.rules)
        self.auto_bid_engine = auto_bid_engine or AutoBidEngine(id_factory)
        self._new_id = id_factory

        self.lock_timeout = config.service.lock_timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._settled: Set[str] = set()
        self.stats = ServiceStats()

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def _lock_for(self, auction_id: str) -> asyncio.Lock:
        lock = self._locks.get(auction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[auction_id] = lock
        return lock

    @asynccontextmanager
    async def _serialized(self, auction_id: str):
        lock = self._lock_for(auction_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError:
            _reject(
                RejectionReason.BUSY,
                f"Auction {auction_id} is busy, retry shortly",
            )
        try:
            yield
        finally:
            lock.release()
            # Settled auctions no longer change; a later caller gets a fresh lock
            if auction_id in self._settled and not lock.locked():
                self._settled.discard(auction_id)
                self._locks.pop(auction_id, None)

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        try:
            with self.store.transaction():
                yield
        except StoreUnavailable as e:
            _reject(RejectionReason.UNAVAILABLE, f"Auction store unavailable: {e}")

    def _settle(self, auction_id: str) -> None:
        """Drop the auction's lock once the current operation releases it."""
        self._settled.add(auction_id)

    def _settle_if_finished(self, auction: Auction) -> None:
        if auction.state == AuctionState.CANCELLED or (
            auction.state == AuctionState.ENDED
            and (auction.winner_id is None or auction.order_id is not None)
        ):
            self._settle(auction.auction_id)

    def _load(self, auction_id: str) -> Auction:
        auction = self.store.load_auction_for_update(auction_id)
        if auction is None:
            self._settle(auction_id)
            _reject(RejectionReason.AUCTION_NOT_FOUND, f"Auction {auction_id} not found")
        self._settle_if_finished(auction)
        return auction

    def _rejected(self, operation: str, auction_id: str, rejection: Rejection) -> Rejection:
        self.stats.rejections += 1
        message = (
            f"{operation} on {auction_id} rejected: "
            f"{rejection.reason.name} ({rejection.message})"
        )
        if rejection.category == ErrorCategory.INFRASTRUCTURE:
            logger.error(message)
        elif rejection.category == ErrorCategory.STATE:
            logger.warning(message)
        else:
            logger.debug(message)
        return rejection

    # -------------------------------------------------------------------------
    # Creation and scheduling
    # -------------------------------------------------------------------------

    async def create_auction(
        self,
        seller_id: str,
        product_id: str,
        starting_price: Money,
        now: int,
        min_increment: Optional[Money] = None,
        reserve_price: Optional[Money] = None,
        buy_now_price: Optional[Money] = None,
        anti_sniping_window_ms: Optional[int] = None,
        anti_sniping_extension_ms: Optional[int] = None,
        max_extensions: Optional[int] = None,
    ) -> TransitionResult:
        """Create an auction in DRAFT.

        Anti-sniping settings default to the configured rules; pass 0 to
        disable anti-sniping for this auction.
        """
        rules = self.config.rules
        currency = starting_price.currency
        if min_increment is None:
            min_increment = Money(rules.default_min_increment, currency)
        if anti_sniping_window_ms is None:
            anti_sniping_window_ms = rules.default_anti_sniping_window_seconds * 1000
        if anti_sniping_extension_ms is None:
            anti_sniping_extension_ms = rules.default_anti_sniping_extension_seconds * 1000
        if max_extensions is None:
            max_extensions = rules.max_extensions

        problem = self._check_pricing(
            starting_price, min_increment, reserve_price, buy_now_price
        )
        if problem is None and (anti_sniping_window_ms < 0 or anti_sniping_extension_ms < 0):
            problem = "Anti-sniping durations cannot be negative"
        if problem is None and max_extensions <= 0:
            problem = "max_extensions must be positive"
        if problem is not None:
            rejection = Rejection(RejectionReason.INVALID_AMOUNT, problem)
            return TransitionResult(
                success=False,
                rejection=self._rejected("create_auction", product_id, rejection),
                changed=False,
            )

        auction = Auction(
            auction_id=self._new_id(),
            product_id=product_id,
            seller_id=seller_id,
            starting_price=starting_price,
            current_bid=starting_price,
            min_increment=min_increment,
            max_extensions=max_extensions,
            reserve_price=reserve_price,
            buy_now_price=buy_now_price,
            anti_sniping_window_ms=anti_sniping_window_ms,
            anti_sniping_extension_ms=anti_sniping_extension_ms,
            created_ts=now,
            updated_ts=now,
        )

        try:
            with self._atomic():
                self.store.insert_auction(auction)
                self.store.record_activity(AuctionActivity(
                    auction.auction_id, ActivityType.CREATED, now, actor_id=seller_id,
                    metadata={"starting_price": starting_price.amount},
                ))
        except OperationRejected as e:
            return TransitionResult(
                success=False,
                rejection=self._rejected("create_auction", auction.auction_id, e.rejection),
                changed=False,
            )

        logger.info(
            f"Created auction {auction.auction_id} for product {product_id} "
            f"starting at {starting_price.format()}"
        )
        return TransitionResult(success=True, auction=auction)

    @staticmethod
    def _check_pricing(
        starting_price: Money,
        min_increment: Money,
        reserve_price: Optional[Money],
        buy_now_price: Optional[Money],
    ) -> Optional[str]:
        currency = starting_price.currency
        for label, value in (
            ("min_increment", min_increment),
            ("reserve_price", reserve_price),
            ("buy_now_price", buy_now_price),
        ):
            if value is not None and value.currency != currency:
                return f"{label} must be in {currency}"

        if min_increment.amount <= 0:
            return "min_increment must be positive"
        if reserve_price is not None and reserve_price < starting_price:
            return "reserve_price cannot be below starting_price"
        if buy_now_price is not None:
            if buy_now_price <= starting_price:
                return "buy_now_price must be above starting_price"
            if reserve_price is not None and buy_now_price < reserve_price:
                return "buy_now_price cannot be below reserve_price"
        return None

    async def schedule_auction(
        self,
        auction_id: str,
        start_ts: int,
        end_ts: int,
        now: int,
    ) -> TransitionResult:
        """Move a DRAFT auction to SCHEDULED with its bidding window."""
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    result = self.state_machine.schedule(auction, start_ts, end_ts, now)
                    if not result.success:
                        raise OperationRejected(result.rejection)
                    self.store.save_auction(result.auction, [])
                    self.store.record_activity(AuctionActivity(
                        auction_id, ActivityType.SCHEDULED, now,
                        metadata={"start_ts": start_ts, "end_ts": end_ts},
                    ))
        except OperationRejected as e:
            return TransitionResult(
                success=False,
                rejection=self._rejected("schedule_auction", auction_id, e.rejection),
                changed=False,
            )

        logger.info(f"Scheduled auction {auction_id}: {start_ts} -> {end_ts}")
        return result

    # -------------------------------------------------------------------------
    # Bidding
    # -------------------------------------------------------------------------

    async def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: Money,
        now: int,
    ) -> BidResult:
        """Place a manual bid and return the final accepted bid.

        Standing auto-bid mandates answer in the same unit, and a bid inside
        the anti-sniping window extends the auction. Hitting the extension
        cap does not reject the bid; it is reported in extension_rejection.
        """
        events: List[NotificationEvent] = []
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)

                    validation = validate_bid(auction, amount, bidder_id, now)
                    if not validation.ok:
                        raise OperationRejected(validation.rejection)

                    previous_leader = auction.leader_id
                    bid = Bid(
                        bid_id=self._new_id(),
                        auction_id=auction_id,
                        bidder_id=bidder_id,
                        amount=amount,
                        placed_ts=now,
                    )
                    auction = replace(
                        auction,
                        current_bid=amount,
                        bid_count=auction.bid_count + 1,
                        leader_id=bidder_id,
                        updated_ts=now,
                    )

                    mandates = self.store.load_active_mandates(auction_id)
                    resolution = self.auto_bid_engine.resolve(auction, mandates, now)
                    auction = resolution.auction
                    placed = [bid] + resolution.bids

                    auction, extended, extension_rejection = self._extend_for(auction, bid, now)

                    self.store.save_auction(auction, placed)
                    for mandate in resolution.deactivated:
                        self.store.save_mandate(mandate)
                    self._record_bids(placed, now)
                    if extended:
                        self._record_extension(auction, bid, now)

                    events.extend(self._bid_events(auction, placed, previous_leader, now))
                    if extended:
                        events.append(self._extension_event(auction, now))
        except OperationRejected as e:
            return BidResult(
                success=False,
                rejection=self._rejected("place_bid", auction_id, e.rejection),
            )

        self.stats.bids_accepted += 1
        self.stats.auto_bids_placed += len(resolution.bids)
        logger.info(
            f"Bid {bid.bid_id} on {auction_id} by {bidder_id}: {amount.format()} "
            f"(current {auction.current_bid.format()}, leader {auction.leader_id}, "
            f"auto_bids={len(resolution.bids)}, extended={extended})"
        )
        await self._dispatch(events)

        return BidResult(
            success=True,
            bid=placed[-1],
            own_bid=bid,
            auction=auction,
            placed_bids=placed,
            was_extended=extended,
            extension_rejection=extension_rejection,
        )

    async def create_auto_bid_mandate(
        self,
        auction_id: str,
        bidder_id: str,
        max_amount: Money,
        increment: Money,
        now: int,
    ) -> MandateResult:
        """Register a proxy maximum for a bidder and run resolution once.

        Any earlier active mandate of the same bidder on this auction is
        deactivated first.
        """
        events: List[NotificationEvent] = []
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    self._check_mandate(auction, bidder_id, max_amount, increment, now)

                    for existing in self.store.load_active_mandates(auction_id):
                        if existing.bidder_id == bidder_id:
                            self.store.save_mandate(replace(existing, active=False))

                    mandate = AutoBidMandate(
                        mandate_id=self._new_id(),
                        auction_id=auction_id,
                        bidder_id=bidder_id,
                        max_amount=max_amount,
                        increment=increment,
                        created_ts=now,
                    )
                    self.store.save_mandate(mandate)
                    self.store.record_activity(AuctionActivity(
                        auction_id, ActivityType.MANDATE_CREATED, now, actor_id=bidder_id,
                        metadata={"mandate_id": mandate.mandate_id},
                    ))

                    previous_leader = auction.leader_id
                    mandates = self.store.load_active_mandates(auction_id)
                    resolution = self.auto_bid_engine.resolve(auction, mandates, now)
                    auction = resolution.auction
                    placed = resolution.bids

                    extended = False
                    if placed:
                        auction, extended, _ = self._extend_for(auction, placed[-1], now)
                        self.store.save_auction(auction, placed)
                    for deactivated in resolution.deactivated:
                        self.store.save_mandate(deactivated)
                        if deactivated.mandate_id == mandate.mandate_id:
                            mandate = deactivated
                    self._record_bids(placed, now)
                    if extended:
                        self._record_extension(auction, placed[-1], now)

                    events.extend(self._bid_events(auction, placed, previous_leader, now))
                    if extended:
                        events.append(self._extension_event(auction, now))
        except OperationRejected as e:
            return MandateResult(
                success=False,
                rejection=self._rejected("create_auto_bid_mandate", auction_id, e.rejection),
            )

        self.stats.auto_bids_placed += len(placed)
        logger.info(
            f"Mandate {mandate.mandate_id} on {auction_id} by {bidder_id} "
            f"up to {max_amount.format()}: {len(placed)} auto bids"
        )
        await self._dispatch(events)

        return MandateResult(success=True, mandate=mandate, auction=auction, placed_bids=placed)

    @staticmethod
    def _check_mandate(
        auction: Auction,
        bidder_id: str,
        max_amount: Money,
        increment: Money,
        now: int,
    ) -> None:
        if not auction.state.accepts_bids:
            _reject(
                RejectionReason.AUCTION_NOT_OPEN,
                f"Auction is not accepting bids (state: {auction.state.name})",
            )
        if auction.end_ts is None or now >= auction.end_ts:
            _reject(RejectionReason.AUCTION_ALREADY_ENDED, "Auction has already ended")
        if bidder_id == auction.seller_id:
            _reject(RejectionReason.SELLER_CANNOT_BID, "Sellers cannot bid on their own auctions")
        if max_amount.currency != auction.currency or increment.currency != auction.currency:
            _reject(
                RejectionReason.INVALID_AMOUNT,
                f"Mandate amounts must be in {auction.currency}",
            )
        if max_amount <= auction.current_bid:
            _reject(
                RejectionReason.MANDATE_TOO_LOW,
                f"Maximum must be above the current bid of {auction.current_bid.format()}",
                min_amount=minimum_next_bid(auction),
            )
        if increment < auction.min_increment:
            _reject(
                RejectionReason.INVALID_AMOUNT,
                f"Increment must be at least {auction.min_increment.format()}",
            )

    async def buy_now(self, auction_id: str, buyer_id: str, now: int) -> BidResult:
        """Buy at the fixed price, ending the auction with the buyer as winner."""
        events: List[NotificationEvent] = []
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    price = auction.buy_now_price
                    if price is None or auction.current_bid >= price:
                        _reject(
                            RejectionReason.BUY_NOW_NOT_AVAILABLE,
                            "Buy now is not available for this auction",
                        )
                    if not auction.state.accepts_bids:
                        _reject(
                            RejectionReason.AUCTION_NOT_OPEN,
                            f"Auction is not accepting bids (state: {auction.state.name})",
                        )
                    if now >= auction.end_ts:
                        _reject(RejectionReason.AUCTION_ALREADY_ENDED, "Auction has already ended")
                    if buyer_id == auction.seller_id:
                        _reject(
                            RejectionReason.SELLER_CANNOT_BID,
                            "Sellers cannot buy their own auctions",
                        )

                    transition = self.state_machine.end_with_buy_now(auction, buyer_id, price, now)
                    if not transition.success:
                        raise OperationRejected(transition.rejection)

                    previous_leader = auction.leader_id
                    bid = Bid(
                        bid_id=self._new_id(),
                        auction_id=auction_id,
                        bidder_id=buyer_id,
                        amount=price,
                        placed_ts=now,
                    )
                    auction = transition.auction
                    self.store.save_auction(auction, [bid])
                    self._deactivate_mandates(auction_id)
                    self.store.record_activity(AuctionActivity(
                        auction_id, ActivityType.BUY_NOW_EXECUTED, now, actor_id=buyer_id,
                        metadata={"bid_id": bid.bid_id, "amount": price.amount},
                    ))
                    self._record_end(auction, now)
                    events.extend(self._bid_events(auction, [bid], previous_leader, now))

                auction = await self._create_order_for(auction, now)
        except OperationRejected as e:
            return BidResult(
                success=False,
                rejection=self._rejected("buy_now", auction_id, e.rejection),
            )

        self.stats.bids_accepted += 1
        self.stats.auctions_ended += 1
        logger.info(f"Buy now on {auction_id} by {buyer_id} at {price.format()}")
        events.extend(self._end_events(auction, now))
        await self._dispatch(events)

        return BidResult(success=True, bid=bid, own_bid=bid, auction=auction, placed_bids=[bid])

    # -------------------------------------------------------------------------
    # Anti-sniping
    # -------------------------------------------------------------------------

    def _extend_for(
        self,
        auction: Auction,
        bid: Bid,
        now: int,
    ) -> Tuple[Auction, bool, Optional[Rejection]]:
        if not self.state_machine.in_sniping_window(auction, bid.placed_ts):
            return auction, False, None

        result = self.state_machine.extend(auction, now, bid.placed_ts, bid.bid_id)
        if not result.success:
            logger.warning(
                f"Auction {auction.auction_id} not extended for bid {bid.bid_id}: "
                f"{result.rejection.message}"
            )
            return auction, False, result.rejection
        if result.changed:
            self.stats.extensions += 1
        return result.auction, result.changed, None

    async def extend_if_sniped(
        self,
        auction_id: str,
        bid_id: str,
        bid_placed_ts: int,
        now: int,
    ) -> TransitionResult:
        """Extend the auction for a bid placed inside the anti-sniping window.

        A bid outside the window, or one that already caused an extension,
        is a successful no-op with changed=False.
        """
        events: List[NotificationEvent] = []
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    if (
                        auction.state.accepts_bids
                        and bid_id != auction.last_extension_bid_id
                        and not self.state_machine.in_sniping_window(auction, bid_placed_ts)
                    ):
                        return TransitionResult(success=True, auction=auction, changed=False)

                    result = self.state_machine.extend(auction, now, bid_placed_ts, bid_id)
                    if not result.success:
                        raise OperationRejected(result.rejection)

                    if result.changed:
                        self.stats.extensions += 1
                        self.store.save_auction(result.auction, [])
                        self.store.record_activity(AuctionActivity(
                            auction_id, ActivityType.EXTENDED, now,
                            metadata={"bid_id": bid_id, "end_ts": result.auction.end_ts},
                        ))
                        events.append(self._extension_event(result.auction, now))
        except OperationRejected as e:
            return TransitionResult(
                success=False,
                rejection=self._rejected("extend_if_sniped", auction_id, e.rejection),
                changed=False,
            )

        await self._dispatch(events)
        return result

    async def extend_auction(
        self,
        auction_id: str,
        duration_ms: int,
        actor_id: Optional[str],
        now: int,
    ) -> TransitionResult:
        """Extend a running auction by duration_ms on request of a seller or admin."""
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    result = self.state_machine.extend_manually(auction, duration_ms, now)
                    if not result.success:
                        raise OperationRejected(result.rejection)
                    auction = result.auction
                    self.store.save_auction(auction, [])
                    self.store.record_activity(AuctionActivity(
                        auction_id, ActivityType.EXTENDED, now, actor_id=actor_id,
                        metadata={
                            "manual": True,
                            "duration_ms": duration_ms,
                            "end_ts": auction.end_ts,
                            "extension_count": auction.extension_count,
                        },
                    ))
                    recipients = _unique(
                        self.store.get_bidder_ids(auction_id) + [auction.seller_id]
                    )
        except OperationRejected as e:
            return TransitionResult(
                success=False,
                rejection=self._rejected("extend_auction", auction_id, e.rejection),
                changed=False,
            )

        self.stats.extensions += 1
        logger.info(
            f"Auction {auction_id} extended by {duration_ms}ms to {auction.end_ts} "
            f"(by {actor_id or 'system'})"
        )
        await self._dispatch([self._extension_event(
            auction, now, recipients=recipients, manual=True
        )])
        return result

    # -------------------------------------------------------------------------
    # Ending
    # -------------------------------------------------------------------------

    async def close_auction(self, auction_id: str, now: int) -> CloseResult:
        """End an auction whose end time has passed.

        A winner gets a pending order through the order port. If that call
        fails the auction stays ENDED without an order_id.
        """
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    auction = self._end_locked(auction, now)
                auction = await self._create_order_for(auction, now)
        except OperationRejected as e:
            return CloseResult(
                success=False,
                rejection=self._rejected("close_auction", auction_id, e.rejection),
            )

        await self._dispatch(self._end_events(auction, now))
        return CloseResult(
            success=True,
            auction=auction,
            winner_id=auction.winner_id,
            order_id=auction.order_id,
        )

    def _end_locked(self, auction: Auction, now: int) -> Auction:
        result = self.state_machine.end(auction, now)
        if not result.success:
            raise OperationRejected(result.rejection)
        auction = result.auction
        self.store.save_auction(auction, [])
        self._deactivate_mandates(auction.auction_id)
        self._record_end(auction, now)
        self.stats.auctions_ended += 1

        if auction.winner_id:
            logger.info(
                f"Auction {auction.auction_id} won by {auction.winner_id} "
                f"at {auction.current_bid.format()}"
            )
        else:
            logger.info(
                f"Auction {auction.auction_id} passed "
                f"(bids={auction.bid_count}, reserve_met={auction.reserve_met})"
            )
        return auction

    async def _create_order_for(self, auction: Auction, now: int) -> Auction:
        """Create the pending order for a won auction. Caller holds the lock."""
        if auction.winner_id is None or auction.order_id is not None:
            self._settle_if_finished(auction)
            return auction

        try:
            order_id = await self.orders.create_pending_order(
                auction.auction_id, auction.winner_id, auction.current_bid
            )
        except Exception as e:
            self.stats.order_failures += 1
            logger.error(f"Order creation failed for auction {auction.auction_id}: {e}")
            return auction

        auction = replace(auction, order_id=order_id)
        try:
            with self._atomic():
                self.store.save_auction(auction, [])
                self.store.record_activity(AuctionActivity(
                    auction.auction_id, ActivityType.ORDER_CREATED, now,
                    actor_id=auction.winner_id, metadata={"order_id": order_id},
                ))
        except OperationRejected as e:
            # Order exists remotely; the retry sweep links it once the store is back
            logger.error(
                f"Order {order_id} created but not recorded on {auction.auction_id}: "
                f"{e.rejection.message}"
            )
            return replace(auction, order_id=None)

        self.stats.orders_created += 1
        logger.info(f"Created order {order_id} for auction {auction.auction_id}")
        self._settle_if_finished(auction)
        return auction

    async def retry_pending_orders(self, now: int, limit: int = 200) -> int:
        """Create orders for ended auctions whose winner has none yet.

        Returns the number of orders created.
        """
        try:
            auction_ids = self.store.list_unordered_winners(limit)
        except StoreUnavailable as e:
            logger.error(f"Cannot list auctions awaiting orders: {e}")
            return 0

        created = 0
        for auction_id in auction_ids:
            try:
                async with self._serialized(auction_id):
                    with self._atomic():
                        auction = self._load(auction_id)
                    if auction.order_id is not None or auction.winner_id is None:
                        continue
                    auction = await self._create_order_for(auction, now)
            except OperationRejected as e:
                self._rejected("retry_pending_orders", auction_id, e.rejection)
                continue
            if auction.order_id is not None:
                created += 1

        if created:
            logger.info(f"Created {created} pending orders on retry")
        return created

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def cancel_auction(
        self,
        auction_id: str,
        reason: str,
        admin_override: bool = False,
        now: int = 0,
    ) -> CancelResult:
        """Cancel an auction and tell everyone who bid on it."""
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)
                    result = self.state_machine.cancel(auction, reason, admin_override, now)
                    if not result.success:
                        raise OperationRejected(result.rejection)
                    auction = result.auction
                    self.store.save_auction(auction, [])
                    self._deactivate_mandates(auction_id)
                    self._settle_if_finished(auction)
                    bidders = self.store.get_bidder_ids(auction_id)
                    self.store.record_activity(AuctionActivity(
                        auction_id, ActivityType.CANCELLED, now,
                        metadata={"reason": reason, "admin_override": admin_override},
                    ))
        except OperationRejected as e:
            return CancelResult(
                success=False,
                rejection=self._rejected("cancel_auction", auction_id, e.rejection),
            )

        logger.info(f"Cancelled auction {auction_id}: {reason} ({len(bidders)} bidders)")
        await self._dispatch([NotificationEvent(
            EventType.AUCTION_CANCELLED,
            auction_id,
            now,
            recipients=_unique(bidders + [auction.seller_id]),
            payload={"reason": reason},
        )])
        return CancelResult(success=True, auction=auction, notified_bidders=bidders)

    # -------------------------------------------------------------------------
    # Time-driven transitions
    # -------------------------------------------------------------------------

    async def advance_auction(self, auction_id: str, now: int) -> List[AuctionState]:
        """Apply every time-driven transition that is due.

        Returns the states entered, in order (possibly several, e.g. an
        overdue scheduled auction goes ACTIVE then ENDED).
        """
        entered: List[AuctionState] = []
        events: List[NotificationEvent] = []
        try:
            async with self._serialized(auction_id):
                with self._atomic():
                    auction = self._load(auction_id)

                    if auction.state == AuctionState.SCHEDULED and now >= auction.start_ts:
                        auction = self.state_machine.activate(auction, now).auction
                        self.store.save_auction(auction, [])
                        self.store.record_activity(
                            AuctionActivity(auction_id, ActivityType.STARTED, now)
                        )
                        entered.append(AuctionState.ACTIVE)
                        events.append(NotificationEvent(
                            EventType.AUCTION_STARTED, auction_id, now,
                            recipients=[auction.seller_id],
                            payload={"end_ts": auction.end_ts},
                        ))

                    if auction.state.accepts_bids and now >= auction.end_ts:
                        auction = self._end_locked(auction, now)
                        entered.append(AuctionState.ENDED)
                    elif auction.state == AuctionState.ACTIVE:
                        result = self.state_machine.tick_to_ending_soon(auction, now)
                        if result.success:
                            auction = result.auction
                            self.store.save_auction(auction, [])
                            self.store.record_activity(
                                AuctionActivity(auction_id, ActivityType.ENDING_SOON, now)
                            )
                            entered.append(AuctionState.ENDING_SOON)
                            events.append(NotificationEvent(
                                EventType.AUCTION_ENDING_SOON, auction_id, now,
                                recipients=_unique(
                                    self.store.get_bidder_ids(auction_id) + [auction.seller_id]
                                ),
                                payload={"end_ts": auction.end_ts},
                            ))

                if auction.state == AuctionState.ENDED:
                    auction = await self._create_order_for(auction, now)
        except OperationRejected as e:
            self._rejected("advance_auction", auction_id, e.rejection)
            return entered

        if AuctionState.ENDED in entered:
            events.extend(self._end_events(auction, now))
        await self._dispatch(events)
        return entered

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_auction_snapshot(self, auction_id: str, now: int) -> Optional[AuctionSnapshot]:
        """Current view of an auction. Never takes the auction lock."""
        auction = self.store.load_auction(auction_id)
        if auction is None:
            return None
        return AuctionSnapshot(
            auction_id=auction.auction_id,
            state=auction.state,
            current_bid=auction.current_bid,
            min_next_bid=minimum_next_bid(auction),
            bid_count=auction.bid_count,
            leader_id=auction.leader_id,
            winner_id=auction.winner_id,
            reserve_met=auction.reserve_met,
            start_ts=auction.start_ts,
            end_ts=auction.end_ts,
            time_remaining_ms=auction.time_remaining_ms(now),
            extension_count=auction.extension_count,
            buy_now_price=auction.buy_now_price,
        )

    def get_bid_history(
        self,
        auction_id: str,
        since_ts: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Optional[dict]:
        """Accepted bids with summary statistics and quick-bid suggestions."""
        auction = self.store.load_auction(auction_id)
        if auction is None:
            return None

        stats = self.store.get_bid_stats(auction_id)
        currency = auction.currency
        return {
            "auction_id": auction_id,
            "bids": self.store.get_bids(auction_id, since_ts=since_ts, limit=limit),
            "total_bids": stats["total_bids"],
            "unique_bidders": stats["unique_bidders"],
            "automatic_bids": stats["automatic_bids"],
            "highest_bid": Money(stats["highest_bid"], currency),
            "lowest_bid": Money(stats["lowest_bid"], currency),
            "suggested_bids": (
                suggested_bids(auction, self.config.rules.suggestion_steps_pct)
                if auction.state.accepts_bids else []
            ),
        }

    def get_status_summary(self) -> Dict[str, int]:
        """Number of auctions in each state, plus the total."""
        counts = self.store.get_status_summary()
        summary = {state.name: counts.get(state.name, 0) for state in AuctionState}
        summary["TOTAL"] = sum(summary.values())
        return summary

    def get_stats(self) -> dict:
        return asdict(self.stats)

    # -------------------------------------------------------------------------
    # Activity and events
    # -------------------------------------------------------------------------

    def _deactivate_mandates(self, auction_id: str) -> None:
        for mandate in self.store.load_active_mandates(auction_id):
            self.store.save_mandate(replace(mandate, active=False))

    def _record_bids(self, bids: List[Bid], now: int) -> None:
        for bid in bids:
            activity_type = (
                ActivityType.AUTO_BID_PLACED if bid.is_automatic else ActivityType.BID_PLACED
            )
            self.store.record_activity(AuctionActivity(
                bid.auction_id, activity_type, now, actor_id=bid.bidder_id,
                metadata={"bid_id": bid.bid_id, "amount": bid.amount.amount},
            ))

    def _record_extension(self, auction: Auction, bid: Bid, now: int) -> None:
        self.store.record_activity(AuctionActivity(
            auction.auction_id, ActivityType.EXTENDED, now, actor_id=bid.bidder_id,
            metadata={
                "bid_id": bid.bid_id,
                "end_ts": auction.end_ts,
                "extension_count": auction.extension_count,
            },
        ))

    def _record_end(self, auction: Auction, now: int) -> None:
        self.store.record_activity(AuctionActivity(
            auction.auction_id, ActivityType.ENDED, now, actor_id=auction.winner_id,
            metadata={
                "final_price": auction.current_bid.amount,
                "bid_count": auction.bid_count,
                "reserve_met": auction.reserve_met,
            },
        ))

    @staticmethod
    def _bid_events(
        auction: Auction,
        placed: List[Bid],
        previous_leader: Optional[str],
        now: int,
    ) -> List[NotificationEvent]:
        events = []
        displaced = [previous_leader] if previous_leader else []
        for bid in placed:
            events.append(NotificationEvent(
                EventType.BID_ACCEPTED,
                auction.auction_id,
                now,
                recipients=[bid.bidder_id, auction.seller_id],
                payload={
                    "bid_id": bid.bid_id,
                    "bidder_id": bid.bidder_id,
                    "amount": bid.amount.to_dict(),
                    "is_automatic": bid.is_automatic,
                },
            ))
            displaced.append(bid.bidder_id)

        outbid = [b for b in _unique(displaced) if b != auction.leader_id]
        if outbid:
            events.append(NotificationEvent(
                EventType.OUTBID,
                auction.auction_id,
                now,
                recipients=outbid,
                payload={
                    "current_bid": auction.current_bid.to_dict(),
                    "min_next_bid": minimum_next_bid(auction).to_dict(),
                },
            ))
        return events

    @staticmethod
    def _extension_event(
        auction: Auction,
        now: int,
        recipients: Optional[List[str]] = None,
        manual: bool = False,
    ) -> NotificationEvent:
        return NotificationEvent(
            EventType.AUCTION_EXTENDED,
            auction.auction_id,
            now,
            recipients=recipients or [],
            payload={
                "end_ts": auction.end_ts,
                "extension_count": auction.extension_count,
                "manual": manual,
            },
        )

    def _end_events(self, auction: Auction, now: int) -> List[NotificationEvent]:
        if auction.winner_id:
            return [NotificationEvent(
                EventType.AUCTION_WON,
                auction.auction_id,
                now,
                recipients=[auction.winner_id, auction.seller_id],
                payload={
                    "winner_id": auction.winner_id,
                    "final_price": auction.current_bid.to_dict(),
                    "order_id": auction.order_id,
                },
            )]
        try:
            bidders = self.store.get_bidder_ids(auction.auction_id)
        except StoreUnavailable as e:
            logger.error(f"Cannot list bidders of {auction.auction_id}: {e}")
            bidders = []
        return [NotificationEvent(
            EventType.AUCTION_PASSED,
            auction.auction_id,
            now,
            recipients=_unique([auction.seller_id] + bidders),
            payload={"bid_count": auction.bid_count, "reserve_met": auction.reserve_met},
        )]

    async def _dispatch(self, events: List[NotificationEvent]) -> None:
        """Deliver events after commit. Failures are logged only."""
        for event in events:
            try:
                await self.notifier.notify(event)
            except Exception as e:
                self.stats.notification_failures += 1
                logger.error(
                    f"Notification {event.event_type.name} for {event.auction_id} failed: {e}"
                )


def _unique(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen
