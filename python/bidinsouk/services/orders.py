"""Order creation adapters.

Implements OrderPort:
- StoreOrderPort: records pending orders in the auction store
- HttpOrderPort: calls a remote order service

Both are idempotent per auction: asking twice for the same auction returns
the order created the first time.
"""

import logging
from typing import Optional

import aiohttp

from ..config import OrderConfig
from ..models.money import Money
from ..models.types import current_ts_ms, new_id
from .ports import OrderCreationError

logger = logging.getLogger(__name__)


class StoreOrderPort:
    """Pending orders kept next to the auctions they came from."""

    def __init__(self, store):
        self.store = store

    async def create_pending_order(
        self,
        auction_id: str,
        winner_id: str,
        amount: Money,
    ) -> str:
        existing = self.store.get_order_for_auction(auction_id)
        if existing:
            return existing["order_id"]

        order_id = f"ord_{new_id()[:16]}"
        self.store.insert_order(order_id, auction_id, winner_id, amount, current_ts_ms())
        logger.debug(f"Stored pending order {order_id} for auction {auction_id}")
        return order_id


class HttpOrderPort:
    """Creates orders through the marketplace order API."""

    def __init__(self, config: OrderConfig):
        if not config.endpoint_url:
            raise ValueError("endpoint_url is required for the http order backend")
        self.url = config.endpoint_url
        self.timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Open the HTTP session."""
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        logger.info(f"Order client started ({self.url})")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def create_pending_order(
        self,
        auction_id: str,
        winner_id: str,
        amount: Money,
    ) -> str:
        if not self._session:
            raise RuntimeError("Order client not started")

        payload = {
            "auction_id": auction_id,
            "buyer_id": winner_id,
            "amount": amount.to_dict(),
            "status": "PENDING",
        }
        headers = {"Idempotency-Key": f"auction-{auction_id}"}

        try:
            async with self._session.post(self.url, json=payload, headers=headers) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise OrderCreationError(f"Order service returned {resp.status}: {body[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise OrderCreationError(f"Order service unreachable: {e}") from e

        order_id = data.get("order_id")
        if not order_id:
            raise OrderCreationError(f"Order service response has no order_id: {data}")
        return str(order_id)
