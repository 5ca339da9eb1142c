"""Tests for the auction service."""

import asyncio

import pytest
from bidinsouk.models.money import Money
from bidinsouk.models.types import (
    ActivityType,
    AuctionState,
    EventType,
    RejectionReason,
)
from bidinsouk.services.auction_service import AuctionService

from conftest import T0, END, MINUTE, HOUR, FailingNotifier


class TestCreateAndSchedule:
    """Tests for creating and scheduling auctions."""

    @pytest.mark.asyncio
    async def test_create_uses_configured_defaults(self, service):
        result = await service.create_auction("seller", "prod-1", Money(100), now=T0)
        assert result.success
        auction = result.auction
        assert auction.state == AuctionState.DRAFT
        assert auction.current_bid == Money(100)
        assert auction.min_increment == Money(10)
        assert auction.anti_sniping_window_ms == 120_000
        assert auction.anti_sniping_extension_ms == 300_000
        assert auction.max_extensions == 3
        assert service.store.load_auction(auction.auction_id) == auction

    @pytest.mark.asyncio
    async def test_create_records_activity(self, service):
        result = await service.create_auction("seller", "prod-1", Money(100), now=T0)
        activities = service.store.get_activities(result.auction.auction_id)
        assert [a.activity_type for a in activities] == [ActivityType.CREATED]

    @pytest.mark.asyncio
    async def test_invalid_pricing(self, service):
        cases = [
            dict(min_increment=Money(0)),
            dict(reserve_price=Money(50)),
            dict(buy_now_price=Money(100)),
            dict(reserve_price=Money(500), buy_now_price=Money(400)),
            dict(min_increment=Money(10, "EUR")),
            dict(max_extensions=0),
        ]
        for overrides in cases:
            result = await service.create_auction(
                "seller", "prod-1", Money(100), now=T0, **overrides
            )
            assert not result.success, overrides
            assert result.rejection.reason == RejectionReason.INVALID_AMOUNT
        assert service.get_status_summary()["TOTAL"] == 0

    @pytest.mark.asyncio
    async def test_schedule(self, service):
        created = await service.create_auction("seller", "prod-1", Money(100), now=T0 - HOUR)
        auction_id = created.auction.auction_id
        result = await service.schedule_auction(auction_id, T0, END, T0 - HOUR)
        assert result.success
        assert service.store.load_auction(auction_id).state == AuctionState.SCHEDULED

    @pytest.mark.asyncio
    async def test_schedule_invalid_window(self, service):
        created = await service.create_auction("seller", "prod-1", Money(100), now=T0 - HOUR)
        auction_id = created.auction.auction_id
        result = await service.schedule_auction(auction_id, END, T0, T0 - HOUR)
        assert result.rejection.reason == RejectionReason.INVALID_SCHEDULE_WINDOW
        assert service.store.load_auction(auction_id).state == AuctionState.DRAFT

    @pytest.mark.asyncio
    async def test_schedule_unknown_auction(self, service):
        result = await service.schedule_auction("missing", T0, END, T0)
        assert result.rejection.reason == RejectionReason.AUCTION_NOT_FOUND


class TestPlaceBid:
    """Tests for manual bids."""

    @pytest.mark.asyncio
    async def test_accepted_bid(self, service, open_auction, notifier):
        auction = await open_auction()
        result = await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)

        assert result.success
        assert result.bid.amount == Money(110)
        assert result.own_bid == result.bid
        assert result.auction.current_bid == Money(110)
        assert result.auction.leader_id == "alice"
        assert result.auto_bids_triggered == 0
        assert not result.was_extended

        stored = service.store.load_auction(auction.auction_id)
        assert stored.current_bid == Money(110)
        assert stored.bid_count == 1
        assert [b.bid_id for b in service.store.get_bids(auction.auction_id)] == [result.bid.bid_id]

        accepted = notifier.of_type(EventType.BID_ACCEPTED)
        assert len(accepted) == 1
        assert accepted[0].recipients == ["alice", "seller"]

    @pytest.mark.asyncio
    async def test_too_low_leaves_auction_untouched(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(300), T0 + HOUR)

        result = await service.place_bid(auction.auction_id, "bob", Money(309), T0 + HOUR)
        assert not result.success
        assert result.rejection.reason == RejectionReason.BID_TOO_LOW
        assert result.rejection.min_amount == Money(310)

        stored = service.store.load_auction(auction.auction_id)
        assert stored.current_bid == Money(300)
        assert stored.leader_id == "alice"
        assert len(service.store.get_bids(auction.auction_id)) == 1

    @pytest.mark.asyncio
    async def test_first_bid_needs_increment(self, service, open_auction):
        auction = await open_auction()
        result = await service.place_bid(auction.auction_id, "alice", Money(100), T0 + HOUR)
        assert result.rejection.reason == RejectionReason.BID_TOO_LOW

    @pytest.mark.asyncio
    async def test_identity_rules(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)

        again = await service.place_bid(auction.auction_id, "alice", Money(200), T0 + HOUR)
        assert again.rejection.reason == RejectionReason.ALREADY_HIGHEST_BIDDER

        seller = await service.place_bid(auction.auction_id, "seller", Money(200), T0 + HOUR)
        assert seller.rejection.reason == RejectionReason.SELLER_CANNOT_BID

    @pytest.mark.asyncio
    async def test_unknown_auction(self, service):
        result = await service.place_bid("missing", "alice", Money(110), T0)
        assert result.rejection.reason == RejectionReason.AUCTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_open_before_start(self, service):
        created = await service.create_auction("seller", "prod-1", Money(100), now=T0 - HOUR)
        auction_id = created.auction.auction_id
        await service.schedule_auction(auction_id, T0, END, T0 - HOUR)
        result = await service.place_bid(auction_id, "alice", Money(110), T0 - MINUTE)
        assert result.rejection.reason == RejectionReason.AUCTION_NOT_OPEN

    @pytest.mark.asyncio
    async def test_outbid_notification(self, service, open_auction, notifier):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        await service.place_bid(auction.auction_id, "bob", Money(120), T0 + HOUR)

        outbid = notifier.of_type(EventType.OUTBID)
        assert len(outbid) == 1
        assert outbid[0].recipients == ["alice"]
        assert outbid[0].payload["min_next_bid"] == {"amount": 130, "currency": "MAD"}

    @pytest.mark.asyncio
    async def test_current_bid_only_rises(self, service, open_auction):
        auction = await open_auction()
        attempts = [
            ("alice", 110), ("bob", 105), ("bob", 150), ("alice", 140),
            ("carol", 160), ("alice", 400), ("bob", 390),
        ]
        seen = [Money(100)]
        for i, (bidder, amount) in enumerate(attempts):
            await service.place_bid(auction.auction_id, bidder, Money(amount), T0 + i * MINUTE)
            seen.append(service.store.load_auction(auction.auction_id).current_bid)
        assert seen == sorted(seen)
        assert seen[-1] == Money(400)

    @pytest.mark.asyncio
    async def test_concurrent_identical_bids(self, service, open_auction):
        auction = await open_auction()
        results = await asyncio.gather(*[
            service.place_bid(auction.auction_id, bidder, Money(110), T0 + HOUR)
            for bidder in ("alice", "bob", "carol")
        ])
        accepted = [r for r in results if r.success]
        assert len(accepted) == 1
        for r in results:
            if not r.success:
                assert r.rejection.reason == RejectionReason.BID_TOO_LOW
        assert service.store.load_auction(auction.auction_id).bid_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_different_amounts(self, service, open_auction):
        auction = await open_auction()
        results = await asyncio.gather(
            service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR),
            service.place_bid(auction.auction_id, "bob", Money(150), T0 + HOUR),
        )
        accepted = [r for r in results if r.success]
        assert accepted
        for r in results:
            if not r.success:
                assert r.rejection.reason == RejectionReason.BID_TOO_LOW

        stored = service.store.load_auction(auction.auction_id)
        assert stored.bid_count == len(accepted)
        assert stored.current_bid == max(r.bid.amount for r in accepted)
        assert stored.current_bid == Money(150)
        assert stored.leader_id == "bob"
        assert len(service.store.get_bids(auction.auction_id)) == len(accepted)

    @pytest.mark.asyncio
    async def test_concurrent_different_amounts_reversed(self, service, open_auction):
        auction = await open_auction()
        results = await asyncio.gather(
            service.place_bid(auction.auction_id, "bob", Money(150), T0 + HOUR),
            service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR),
        )
        accepted = [r for r in results if r.success]

        stored = service.store.load_auction(auction.auction_id)
        assert stored.bid_count == len(accepted)
        assert stored.current_bid == max(r.bid.amount for r in accepted)
        assert stored.current_bid == Money(150)

    @pytest.mark.asyncio
    async def test_busy_when_lock_held(self, service, open_auction):
        auction = await open_auction()
        lock = service._lock_for(auction.auction_id)
        await lock.acquire()
        try:
            result = await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        finally:
            lock.release()

        assert result.rejection.reason == RejectionReason.BUSY
        assert result.rejection.retryable
        assert service.store.load_auction(auction.auction_id).bid_count == 0

    @pytest.mark.asyncio
    async def test_unavailable_store(self, service, open_auction):
        auction = await open_auction()
        service.store.close()
        result = await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        assert result.rejection.reason == RejectionReason.UNAVAILABLE
        assert result.rejection.retryable

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_bid(
        self, sample_config, store, order_port, make_auction
    ):
        failing = FailingNotifier()
        service = AuctionService(sample_config, store, failing, order_port)
        store.insert_auction(make_auction())

        result = await service.place_bid("auc-1", "alice", Money(110), T0 + HOUR)

        assert result.success
        assert failing.attempts == 1
        assert service.stats.notification_failures == 1
        assert store.load_auction("auc-1").current_bid == Money(110)

    @pytest.mark.asyncio
    async def test_stats(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        await service.place_bid(auction.auction_id, "bob", Money(50), T0 + HOUR)
        stats = service.get_stats()
        assert stats["bids_accepted"] == 1
        assert stats["rejections"] == 1


class TestAutoBids:
    """Tests for proxy bidding through the service."""

    @pytest.mark.asyncio
    async def test_manual_bid_triggers_proxy(self, service, store, open_auction, make_mandate):
        auction = await open_auction(starting_price=Money(300))
        auction_id = auction.auction_id
        store.save_mandate(make_mandate("alice", 500, T0 + 1, auction_id=auction_id))
        store.save_mandate(make_mandate("bob", 300, T0 + 2, auction_id=auction_id))

        result = await service.place_bid(auction_id, "carol", Money(310), T0 + HOUR)

        assert result.success
        assert result.own_bid.bidder_id == "carol"
        assert result.own_bid.amount == Money(310)
        assert result.bid.bidder_id == "alice"
        assert result.bid.amount == Money(320)
        assert result.bid.is_automatic
        assert result.bid == result.placed_bids[-1]
        assert result.auto_bids_triggered == 1
        assert result.auction.current_bid == Money(320)
        assert result.auction.leader_id == "alice"
        assert [m.bidder_id for m in store.load_active_mandates(auction_id)] == ["alice"]

        bids = store.get_bids(auction_id)
        assert [(b.bidder_id, b.amount.amount, b.is_automatic) for b in bids] == [
            ("carol", 310, False),
            ("alice", 320, True),
        ]
        activity_types = [a.activity_type for a in store.get_activities(auction_id)]
        assert ActivityType.AUTO_BID_PLACED in activity_types

    @pytest.mark.asyncio
    async def test_equal_maxima_go_to_earliest(self, service, store, open_auction, make_mandate):
        auction = await open_auction(starting_price=Money(340))
        auction_id = auction.auction_id
        store.save_mandate(make_mandate("alice", 400, T0 + 1, auction_id=auction_id))
        store.save_mandate(make_mandate("bob", 400, T0 + 2, auction_id=auction_id))

        result = await service.place_bid(auction_id, "carol", Money(350), T0 + HOUR)

        assert result.auction.current_bid == Money(400)
        assert result.auction.leader_id == "alice"

    @pytest.mark.asyncio
    async def test_mandate_bids_immediately(self, service, open_auction):
        auction = await open_auction()
        result = await service.create_auto_bid_mandate(
            auction.auction_id, "alice", Money(500), Money(10), T0 + HOUR
        )
        assert result.success
        assert result.mandate.active
        assert [b.amount for b in result.placed_bids] == [Money(110)]
        assert result.auction.leader_id == "alice"

    @pytest.mark.asyncio
    async def test_competing_mandates(self, service, store, open_auction):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.create_auto_bid_mandate(auction_id, "alice", Money(500), Money(10), T0 + HOUR)
        result = await service.create_auto_bid_mandate(
            auction_id, "bob", Money(300), Money(10), T0 + HOUR + 1
        )

        assert result.success
        assert not result.mandate.active
        assert result.auction.leader_id == "alice"
        assert result.auction.current_bid == Money(310)
        assert store.load_auction(auction_id).current_bid == Money(310)

    @pytest.mark.asyncio
    async def test_replacing_mandate(self, service, store, open_auction):
        auction = await open_auction()
        auction_id = auction.auction_id
        first = await service.create_auto_bid_mandate(
            auction_id, "alice", Money(500), Money(10), T0 + HOUR
        )
        second = await service.create_auto_bid_mandate(
            auction_id, "alice", Money(800), Money(20), T0 + HOUR + 1
        )
        active = store.load_active_mandates(auction_id)
        assert [m.mandate_id for m in active] == [second.mandate.mandate_id]
        assert first.mandate.mandate_id != second.mandate.mandate_id

    @pytest.mark.asyncio
    async def test_mandate_rules(self, service, open_auction):
        auction = await open_auction()
        auction_id = auction.auction_id

        too_low = await service.create_auto_bid_mandate(
            auction_id, "alice", Money(100), Money(10), T0 + HOUR
        )
        assert too_low.rejection.reason == RejectionReason.MANDATE_TOO_LOW
        assert too_low.rejection.min_amount == Money(110)

        small_step = await service.create_auto_bid_mandate(
            auction_id, "alice", Money(500), Money(5), T0 + HOUR
        )
        assert small_step.rejection.reason == RejectionReason.INVALID_AMOUNT

        seller = await service.create_auto_bid_mandate(
            auction_id, "seller", Money(500), Money(10), T0 + HOUR
        )
        assert seller.rejection.reason == RejectionReason.SELLER_CANNOT_BID

        late = await service.create_auto_bid_mandate(
            auction_id, "alice", Money(500), Money(10), END
        )
        assert late.rejection.reason == RejectionReason.AUCTION_ALREADY_ENDED


class TestAntiSniping:
    """Tests for end time extensions."""

    @pytest.mark.asyncio
    async def test_late_bid_extends(self, service, open_auction, notifier):
        auction = await open_auction()
        result = await service.place_bid(auction.auction_id, "alice", Money(110), END - 90_000)

        assert result.success
        assert result.was_extended
        assert result.auction.end_ts == END + 5 * MINUTE
        assert result.auction.extension_count == 1
        assert service.store.load_auction(auction.auction_id).end_ts == END + 5 * MINUTE

        extended = notifier.of_type(EventType.AUCTION_EXTENDED)
        assert extended[0].payload["end_ts"] == END + 5 * MINUTE

    @pytest.mark.asyncio
    async def test_extensions_stack(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), END - 90_000)
        new_end = END + 5 * MINUTE
        result = await service.place_bid(auction.auction_id, "bob", Money(120), new_end - MINUTE)
        assert result.was_extended
        assert result.auction.end_ts == new_end + 5 * MINUTE
        assert result.auction.extension_count == 2

    @pytest.mark.asyncio
    async def test_early_bid_does_not_extend(self, service, open_auction):
        auction = await open_auction()
        result = await service.place_bid(auction.auction_id, "alice", Money(110), END - 3 * MINUTE)
        assert not result.was_extended
        assert result.auction.end_ts == END

    @pytest.mark.asyncio
    async def test_cap_keeps_bid(self, service, open_auction):
        auction = await open_auction(max_extensions=1)
        await service.place_bid(auction.auction_id, "alice", Money(110), END - 90_000)
        new_end = END + 5 * MINUTE

        result = await service.place_bid(auction.auction_id, "bob", Money(120), new_end - MINUTE)

        assert result.success
        assert not result.was_extended
        assert result.extension_rejection.reason == RejectionReason.EXTENSION_LIMIT_REACHED
        stored = service.store.load_auction(auction.auction_id)
        assert stored.end_ts == new_end
        assert stored.current_bid == Money(120)

    @pytest.mark.asyncio
    async def test_extend_if_sniped_is_idempotent(self, service, open_auction):
        auction = await open_auction()
        bid = await service.place_bid(auction.auction_id, "alice", Money(110), END - 90_000)

        again = await service.extend_if_sniped(
            auction.auction_id, bid.bid.bid_id, END - 90_000, END - 80_000
        )
        assert again.success
        assert not again.changed
        assert service.store.load_auction(auction.auction_id).extension_count == 1

    @pytest.mark.asyncio
    async def test_extend_if_sniped_outside_window(self, service, open_auction):
        auction = await open_auction()
        result = await service.extend_if_sniped(auction.auction_id, "bid-x", T0 + HOUR, T0 + HOUR)
        assert result.success
        assert not result.changed
        assert service.store.load_auction(auction.auction_id).end_ts == END

    @pytest.mark.asyncio
    async def test_extend_if_sniped_extends(self, service, open_auction):
        auction = await open_auction()
        result = await service.extend_if_sniped(
            auction.auction_id, "bid-x", END - MINUTE, END - MINUTE
        )
        assert result.changed
        assert service.store.load_auction(auction.auction_id).end_ts == END + 5 * MINUTE


class TestManualExtension:
    """Tests for seller and admin extensions."""

    @pytest.mark.asyncio
    async def test_extend_auction(self, service, store, open_auction, notifier):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + HOUR)

        result = await service.extend_auction(auction_id, 30 * MINUTE, "seller", T0 + 2 * HOUR)

        assert result.success
        assert result.auction.end_ts == END + 30 * MINUTE
        stored = store.load_auction(auction_id)
        assert stored.end_ts == END + 30 * MINUTE
        assert stored.extension_count == 1

        activity = store.get_activities(auction_id)[-1]
        assert activity.activity_type == ActivityType.EXTENDED
        assert activity.actor_id == "seller"
        assert activity.metadata["manual"]

        extended = notifier.of_type(EventType.AUCTION_EXTENDED)
        assert len(extended) == 1
        assert extended[0].payload["end_ts"] == END + 30 * MINUTE
        assert extended[0].payload["manual"]
        assert set(extended[0].recipients) == {"alice", "seller"}

    @pytest.mark.asyncio
    async def test_not_limited_by_extension_cap(self, service, open_auction):
        auction = await open_auction(max_extensions=1)
        auction_id = auction.auction_id
        for _ in range(2):
            result = await service.extend_auction(auction_id, MINUTE, "admin", T0 + HOUR)
            assert result.success
        assert service.store.load_auction(auction_id).extension_count == 2

    @pytest.mark.asyncio
    async def test_rejections(self, service, open_auction):
        auction = await open_auction()
        auction_id = auction.auction_id

        result = await service.extend_auction(auction_id, 0, "seller", T0 + HOUR)
        assert result.rejection.reason == RejectionReason.INVALID_EXTENSION

        missing = await service.extend_auction("missing", MINUTE, "seller", T0 + HOUR)
        assert missing.rejection.reason == RejectionReason.AUCTION_NOT_FOUND

        await service.close_auction(auction_id, END)
        ended = await service.extend_auction(auction_id, MINUTE, "seller", END + 1)
        assert ended.rejection.reason == RejectionReason.ILLEGAL_STATE_TRANSITION
        assert service.store.load_auction(auction_id).end_ts == END


class TestLocks:
    """Tests for per-auction lock lifetime."""

    @pytest.mark.asyncio
    async def test_lock_kept_while_running(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        assert auction.auction_id in service._locks

    @pytest.mark.asyncio
    async def test_lock_dropped_after_close(self, service, open_auction):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        await service.close_auction(auction.auction_id, END)
        assert auction.auction_id not in service._locks

    @pytest.mark.asyncio
    async def test_lock_dropped_after_cancel(self, service, open_auction):
        auction = await open_auction()
        await service.cancel_auction(auction.auction_id, "withdrawn", now=T0 + HOUR)
        assert auction.auction_id not in service._locks

    @pytest.mark.asyncio
    async def test_lock_kept_until_order_exists(self, service, open_auction, order_port):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + HOUR)

        order_port.fail = True
        await service.close_auction(auction_id, END)
        assert auction_id in service._locks

        order_port.fail = False
        assert await service.retry_pending_orders(END + MINUTE) == 1
        assert auction_id not in service._locks

    @pytest.mark.asyncio
    async def test_unknown_auction_leaves_no_lock(self, service):
        await service.place_bid("missing", "alice", Money(110), T0 + HOUR)
        assert "missing" not in service._locks

    @pytest.mark.asyncio
    async def test_finished_auction_still_rejects(self, service, open_auction):
        auction = await open_auction()
        await service.close_auction(auction.auction_id, END)
        late = await service.place_bid(auction.auction_id, "alice", Money(110), END + 1)
        assert late.rejection.reason == RejectionReason.AUCTION_NOT_OPEN
        assert auction.auction_id not in service._locks


class TestClose:
    """Tests for ending auctions and order creation."""

    @pytest.mark.asyncio
    async def test_close_without_bids(self, service, open_auction, order_port, notifier):
        auction = await open_auction()
        result = await service.close_auction(auction.auction_id, END)

        assert result.success
        assert result.winner_id is None
        assert result.order_id is None
        assert order_port.calls == []
        assert notifier.of_type(EventType.AUCTION_PASSED)[0].recipients == ["seller"]

    @pytest.mark.asyncio
    async def test_close_too_early(self, service, open_auction):
        auction = await open_auction()
        result = await service.close_auction(auction.auction_id, END - 1)
        assert result.rejection.reason == RejectionReason.ILLEGAL_STATE_TRANSITION

    @pytest.mark.asyncio
    async def test_close_below_reserve(self, service, open_auction, order_port, notifier):
        auction = await open_auction(reserve_price=Money(500))
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)

        result = await service.close_auction(auction.auction_id, END)

        assert result.success
        assert result.auction.state == AuctionState.ENDED
        assert result.winner_id is None
        assert order_port.calls == []
        passed = notifier.of_type(EventType.AUCTION_PASSED)[0]
        assert passed.recipients == ["seller", "alice"]
        assert not passed.payload["reserve_met"]

    @pytest.mark.asyncio
    async def test_close_with_winner(self, service, open_auction, order_port, notifier):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + HOUR)

        result = await service.close_auction(auction_id, END)

        assert result.winner_id == "alice"
        assert order_port.calls == [(auction_id, "alice", Money(110))]
        assert result.order_id == f"ord-{auction_id[:8]}-1"
        assert service.store.load_auction(auction_id).order_id == result.order_id
        won = notifier.of_type(EventType.AUCTION_WON)[0]
        assert won.recipients == ["alice", "seller"]
        assert won.payload["order_id"] == result.order_id

    @pytest.mark.asyncio
    async def test_close_deactivates_mandates(self, service, store, open_auction):
        auction = await open_auction()
        await service.create_auto_bid_mandate(
            auction.auction_id, "alice", Money(500), Money(10), T0 + HOUR
        )
        await service.close_auction(auction.auction_id, END)
        assert store.load_active_mandates(auction.auction_id) == []

    @pytest.mark.asyncio
    async def test_order_failure_then_retry(self, service, store, open_auction, order_port):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + HOUR)

        order_port.fail = True
        result = await service.close_auction(auction_id, END)
        assert result.success
        assert result.winner_id == "alice"
        assert result.order_id is None
        assert service.stats.order_failures == 1
        assert store.list_unordered_winners() == [auction_id]

        order_port.fail = False
        created = await service.retry_pending_orders(END + MINUTE)
        assert created == 1
        assert store.load_auction(auction_id).order_id is not None
        assert store.list_unordered_winners() == []

        # Nothing left to do
        assert await service.retry_pending_orders(END + 2 * MINUTE) == 0
        assert len(order_port.calls) == 2

    @pytest.mark.asyncio
    async def test_closing_twice(self, service, open_auction):
        auction = await open_auction()
        await service.close_auction(auction.auction_id, END)
        again = await service.close_auction(auction.auction_id, END + 1)
        assert again.rejection.reason == RejectionReason.ILLEGAL_STATE_TRANSITION


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_without_bids(self, service, open_auction, notifier):
        auction = await open_auction()
        result = await service.cancel_auction(auction.auction_id, "withdrawn", now=T0 + HOUR)
        assert result.success
        assert result.auction.state == AuctionState.CANCELLED
        assert result.notified_bidders == []
        assert notifier.of_type(EventType.AUCTION_CANCELLED)[0].recipients == ["seller"]

    @pytest.mark.asyncio
    async def test_cancel_with_bids_needs_override(self, service, open_auction, notifier):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + HOUR)

        refused = await service.cancel_auction(auction_id, "fraud", now=T0 + HOUR)
        assert refused.rejection.reason == RejectionReason.CANNOT_CANCEL_WITH_BIDS
        assert service.store.load_auction(auction_id).state == AuctionState.ACTIVE

        result = await service.cancel_auction(
            auction_id, "fraud", admin_override=True, now=T0 + HOUR
        )
        assert result.success
        assert result.notified_bidders == ["alice"]
        cancelled = notifier.of_type(EventType.AUCTION_CANCELLED)[0]
        assert set(cancelled.recipients) == {"alice", "seller"}

        late_bid = await service.place_bid(auction_id, "bob", Money(200), T0 + HOUR)
        assert late_bid.rejection.reason == RejectionReason.AUCTION_NOT_OPEN


class TestBuyNow:
    """Tests for buy now."""

    @pytest.mark.asyncio
    async def test_buy_now(self, service, open_auction, order_port):
        auction = await open_auction(buy_now_price=Money(1000))
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "bob", Money(110), T0 + HOUR)

        result = await service.buy_now(auction_id, "alice", T0 + 2 * HOUR)

        assert result.success
        assert result.auction.state == AuctionState.ENDED
        assert result.auction.winner_id == "alice"
        assert result.auction.current_bid == Money(1000)
        assert result.auction.end_ts == T0 + 2 * HOUR
        assert order_port.calls == [(auction_id, "alice", Money(1000))]
        assert service.store.load_auction(auction_id).bid_count == 2

    @pytest.mark.asyncio
    async def test_buy_now_not_offered(self, service, open_auction):
        auction = await open_auction()
        result = await service.buy_now(auction.auction_id, "alice", T0 + HOUR)
        assert result.rejection.reason == RejectionReason.BUY_NOW_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_buy_now_by_seller(self, service, open_auction):
        auction = await open_auction(buy_now_price=Money(1000))
        result = await service.buy_now(auction.auction_id, "seller", T0 + HOUR)
        assert result.rejection.reason == RejectionReason.SELLER_CANNOT_BID


class TestAdvance:
    """Tests for time-driven transitions."""

    @pytest.mark.asyncio
    async def test_lifecycle(self, service):
        created = await service.create_auction("seller", "prod-1", Money(100), now=T0 - HOUR)
        auction_id = created.auction.auction_id
        await service.schedule_auction(auction_id, T0, END, T0 - HOUR)

        assert await service.advance_auction(auction_id, T0 - 1) == []
        assert await service.advance_auction(auction_id, T0) == [AuctionState.ACTIVE]
        assert await service.advance_auction(auction_id, T0 + HOUR) == []
        assert await service.advance_auction(auction_id, END - HOUR) == [AuctionState.ENDING_SOON]
        assert await service.advance_auction(auction_id, END - MINUTE) == []
        assert await service.advance_auction(auction_id, END) == [AuctionState.ENDED]
        assert service.store.load_auction(auction_id).state == AuctionState.ENDED

    @pytest.mark.asyncio
    async def test_overdue_scheduled_auction(self, service, notifier):
        created = await service.create_auction("seller", "prod-1", Money(100), now=T0 - HOUR)
        auction_id = created.auction.auction_id
        await service.schedule_auction(auction_id, T0, END, T0 - HOUR)

        entered = await service.advance_auction(auction_id, END + HOUR)

        assert entered == [AuctionState.ACTIVE, AuctionState.ENDED]
        assert notifier.of_type(EventType.AUCTION_STARTED)
        assert notifier.of_type(EventType.AUCTION_PASSED)

    @pytest.mark.asyncio
    async def test_advance_creates_order(self, service, open_auction, order_port):
        auction = await open_auction()
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)
        await service.advance_auction(auction.auction_id, END)
        assert len(order_port.calls) == 1
        assert service.store.load_auction(auction.auction_id).order_id is not None

    @pytest.mark.asyncio
    async def test_ending_soon_still_accepts_bids(self, service, open_auction):
        auction = await open_auction()
        await service.advance_auction(auction.auction_id, END - 30 * MINUTE)
        result = await service.place_bid(auction.auction_id, "alice", Money(110), END - 20 * MINUTE)
        assert result.success
        assert result.auction.state == AuctionState.ENDING_SOON


class TestReads:
    """Tests for snapshots, history and summaries."""

    @pytest.mark.asyncio
    async def test_snapshot(self, service, open_auction):
        auction = await open_auction(reserve_price=Money(200))
        await service.place_bid(auction.auction_id, "alice", Money(110), T0 + HOUR)

        snapshot = service.get_auction_snapshot(auction.auction_id, T0 + 2 * HOUR)

        assert snapshot.state == AuctionState.ACTIVE
        assert snapshot.current_bid == Money(110)
        assert snapshot.min_next_bid == Money(120)
        assert snapshot.bid_count == 1
        assert snapshot.leader_id == "alice"
        assert not snapshot.reserve_met
        assert snapshot.time_remaining_ms == END - (T0 + 2 * HOUR)

    def test_snapshot_missing(self, service):
        assert service.get_auction_snapshot("missing", T0) is None

    @pytest.mark.asyncio
    async def test_bid_history(self, service, open_auction):
        auction = await open_auction()
        auction_id = auction.auction_id
        await service.place_bid(auction_id, "alice", Money(110), T0 + MINUTE)
        await service.place_bid(auction_id, "bob", Money(120), T0 + 2 * MINUTE)

        history = service.get_bid_history(auction_id)
        assert [b.bidder_id for b in history["bids"]] == ["alice", "bob"]
        assert history["total_bids"] == 2
        assert history["unique_bidders"] == 2
        assert history["highest_bid"] == Money(120)
        assert history["lowest_bid"] == Money(110)
        assert history["suggested_bids"][0] == Money(130)

        recent = service.get_bid_history(auction_id, since_ts=T0 + MINUTE)
        assert [b.bidder_id for b in recent["bids"]] == ["bob"]
        assert recent["total_bids"] == 2

    def test_bid_history_missing(self, service):
        assert service.get_bid_history("missing") is None

    @pytest.mark.asyncio
    async def test_status_summary(self, service, open_auction):
        await open_auction()
        await service.create_auction("seller", "prod-2", Money(100), now=T0)

        summary = service.get_status_summary()
        assert summary["ACTIVE"] == 1
        assert summary["DRAFT"] == 1
        assert summary["ENDED"] == 0
        assert summary["TOTAL"] == 2
