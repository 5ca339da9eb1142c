"""Storage layer for the Bidinsouk auction engine.

Uses:
- SQLite for the transactional auction ledger
- DuckDB for analytical reporting
"""

from .auction_store import AuctionStore
from .analytics_store import AnalyticsStore

__all__ = [
    "AuctionStore",
    "AnalyticsStore",
]
