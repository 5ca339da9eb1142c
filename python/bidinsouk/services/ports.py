"""Collaborator interfaces the auction service depends on.

Concrete implementations:
- AuctionRepository: storage.auction_store.AuctionStore
- NotificationPort: services.notifier
- OrderPort: services.orders
"""

from typing import ContextManager, List, Optional, Protocol

from ..models.money import Money
from ..models.types import (
    Auction,
    AuctionActivity,
    AutoBidMandate,
    Bid,
    NotificationEvent,
)


class StoreUnavailable(Exception):
    """The persistence layer could not complete an operation."""


class OrderCreationError(Exception):
    """The order backend refused or failed to create an order."""


class AuctionRepository(Protocol):
    """Persistence contract. Calls inside transaction() commit as one unit."""

    def transaction(self) -> ContextManager[None]:
        ...

    def load_auction(self, auction_id: str) -> Optional[Auction]:
        ...

    def load_auction_for_update(self, auction_id: str) -> Optional[Auction]:
        ...

    def save_auction(self, auction: Auction, new_bids: List[Bid]) -> None:
        ...

    def load_active_mandates(self, auction_id: str) -> List[AutoBidMandate]:
        ...

    def save_mandate(self, mandate: AutoBidMandate) -> None:
        ...

    def record_activity(self, activity: AuctionActivity) -> None:
        ...

    def get_bidder_ids(self, auction_id: str) -> List[str]:
        ...


class NotificationPort(Protocol):
    """Fire-and-forget delivery of notification events."""

    async def notify(self, event: NotificationEvent) -> None:
        ...


class OrderPort(Protocol):
    """Creates a pending order for a won auction and returns its id."""

    async def create_pending_order(
        self,
        auction_id: str,
        winner_id: str,
        amount: Money,
    ) -> str:
        ...
