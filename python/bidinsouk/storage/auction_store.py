"""Auction ledger storage using SQLite.

Stores:
- Auctions (aggregate state)
- Bids (append-only)
- Auto-bid mandates
- Activity log
- Pending orders created from won auctions

Writes that belong together run inside transaction(), which takes SQLite's
write lock up front (BEGIN IMMEDIATE) so a loaded auction cannot change
underneath the caller before commit.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..config import DatabaseConfig
from ..models.money import Money
from ..models.types import (
    ActivityType,
    Auction,
    AuctionActivity,
    AuctionState,
    AutoBidMandate,
    Bid,
)
from ..services.ports import StoreUnavailable

logger = logging.getLogger(__name__)


IN_MEMORY = ":memory:"


class AuctionStore:
    """SQLite storage for auctions, bids and mandates."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        if config.auctions_db == IN_MEMORY:
            self.db_path = None
        else:
            self.db_path = Path(config.data_dir) / config.auctions_db
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    def connect(self) -> None:
        """Connect to the database."""
        if self.db_path is None:
            target = IN_MEMORY
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        # Autocommit mode; explicit transactions via transaction().
        # Access is confined to the event loop thread, which is not always
        # the thread that connected (e.g. test clients).
        self._conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()
        logger.info(f"Connected to auction store: {target}")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise StoreUnavailable("Auction store is not connected")
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite error: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed reads and writes as one atomic unit.

        Nested use joins the outer transaction.
        """
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        self._execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield
            self._execute("COMMIT")
        except BaseException:
            # SQLite may already have rolled back on I/O errors
            if self._conn is not None and self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        finally:
            self._tx_depth = 0

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS auctions (
                auction_id TEXT PRIMARY KEY,
                product_id TEXT NOT NULL,
                seller_id TEXT NOT NULL,
                currency TEXT NOT NULL,
                starting_price INTEGER NOT NULL,
                current_bid INTEGER NOT NULL,
                min_increment INTEGER NOT NULL,
                reserve_price INTEGER,
                buy_now_price INTEGER,
                state TEXT NOT NULL,
                start_ts INTEGER,
                end_ts INTEGER,
                bid_count INTEGER NOT NULL DEFAULT 0,
                leader_id TEXT,
                winner_id TEXT,
                anti_sniping_window_ms INTEGER,
                anti_sniping_extension_ms INTEGER,
                max_extensions INTEGER NOT NULL,
                extension_count INTEGER NOT NULL DEFAULT 0,
                last_extension_bid_id TEXT,
                cancel_reason TEXT,
                order_id TEXT,
                created_ts INTEGER NOT NULL,
                updated_ts INTEGER NOT NULL,
                CHECK (current_bid >= starting_price)
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS bids (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                bid_id TEXT NOT NULL UNIQUE,
                auction_id TEXT NOT NULL REFERENCES auctions (auction_id),
                bidder_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                currency TEXT NOT NULL,
                placed_ts INTEGER NOT NULL,
                is_automatic INTEGER NOT NULL DEFAULT 0,
                proxy_max_amount INTEGER
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS mandates (
                mandate_id TEXT PRIMARY KEY,
                auction_id TEXT NOT NULL REFERENCES auctions (auction_id),
                bidder_id TEXT NOT NULL,
                max_amount INTEGER NOT NULL,
                increment INTEGER NOT NULL,
                currency TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                created_ts INTEGER NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS activities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                auction_id TEXT NOT NULL,
                activity_type TEXT NOT NULL,
                actor_id TEXT,
                ts INTEGER NOT NULL,
                metadata_json TEXT
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                auction_id TEXT NOT NULL UNIQUE,
                winner_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                currency TEXT NOT NULL,
                status TEXT NOT NULL,
                created_ts INTEGER NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_bids_auction
            ON bids (auction_id, placed_ts)
        """)

        # At most one active mandate per (auction, bidder)
        self._conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_mandates_active_pair
            ON mandates (auction_id, bidder_id) WHERE active = 1
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_auctions_state
            ON auctions (state, end_ts)
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_activities_auction
            ON activities (auction_id, ts)
        """)

    # -------------------------------------------------------------------------
    # Auctions
    # -------------------------------------------------------------------------

    def insert_auction(self, auction: Auction) -> None:
        """Store a newly created auction."""
        with self.transaction():
            self._execute("""
                INSERT INTO auctions (
                    auction_id, product_id, seller_id, currency, starting_price,
                    current_bid, min_increment, reserve_price, buy_now_price,
                    state, start_ts, end_ts, bid_count, leader_id, winner_id,
                    anti_sniping_window_ms, anti_sniping_extension_ms,
                    max_extensions, extension_count, last_extension_bid_id,
                    cancel_reason, order_id, created_ts, updated_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                auction.auction_id,
                auction.product_id,
                auction.seller_id,
                auction.currency,
                auction.starting_price.amount,
                auction.current_bid.amount,
                auction.min_increment.amount,
                _amount_or_none(auction.reserve_price),
                _amount_or_none(auction.buy_now_price),
                auction.state.name,
                auction.start_ts,
                auction.end_ts,
                auction.bid_count,
                auction.leader_id,
                auction.winner_id,
                auction.anti_sniping_window_ms,
                auction.anti_sniping_extension_ms,
                auction.max_extensions,
                auction.extension_count,
                auction.last_extension_bid_id,
                auction.cancel_reason,
                auction.order_id,
                auction.created_ts,
                auction.updated_ts,
            ])

    def load_auction(self, auction_id: str) -> Optional[Auction]:
        """Read an auction without taking the write lock."""
        row = self._execute(
            "SELECT * FROM auctions WHERE auction_id = ?", [auction_id]
        ).fetchone()
        return _row_to_auction(row) if row else None

    def load_auction_for_update(self, auction_id: str) -> Optional[Auction]:
        """Read an auction for modification.

        Must be called inside transaction(); the IMMEDIATE transaction
        already holds the database write lock.
        """
        if self._tx_depth == 0:
            raise RuntimeError("load_auction_for_update requires an open transaction")
        return self.load_auction(auction_id)

    def save_auction(self, auction: Auction, new_bids: List[Bid]) -> None:
        """Persist the aggregate state together with newly accepted bids."""
        with self.transaction():
            cursor = self._execute("""
                UPDATE auctions SET
                    current_bid = ?, reserve_price = ?, buy_now_price = ?,
                    state = ?, start_ts = ?, end_ts = ?, bid_count = ?,
                    leader_id = ?, winner_id = ?, extension_count = ?,
                    last_extension_bid_id = ?, cancel_reason = ?, order_id = ?,
                    updated_ts = ?
                WHERE auction_id = ?
            """, [
                auction.current_bid.amount,
                _amount_or_none(auction.reserve_price),
                _amount_or_none(auction.buy_now_price),
                auction.state.name,
                auction.start_ts,
                auction.end_ts,
                auction.bid_count,
                auction.leader_id,
                auction.winner_id,
                auction.extension_count,
                auction.last_extension_bid_id,
                auction.cancel_reason,
                auction.order_id,
                auction.updated_ts,
                auction.auction_id,
            ])
            if cursor.rowcount != 1:
                raise KeyError(f"Auction {auction.auction_id} does not exist")

            for bid in new_bids:
                self._execute("""
                    INSERT INTO bids (
                        bid_id, auction_id, bidder_id, amount, currency,
                        placed_ts, is_automatic, proxy_max_amount
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    bid.bid_id,
                    bid.auction_id,
                    bid.bidder_id,
                    bid.amount.amount,
                    bid.amount.currency,
                    bid.placed_ts,
                    1 if bid.is_automatic else 0,
                    _amount_or_none(bid.proxy_max_amount),
                ])

    def list_due_auctions(
        self,
        now: int,
        ending_soon_threshold_ms: int,
        limit: int = 200,
    ) -> List[str]:
        """Auctions with a time-driven transition pending."""
        rows = self._execute("""
            SELECT auction_id FROM auctions
            WHERE (state = 'SCHEDULED' AND start_ts <= ?)
               OR (state = 'ACTIVE' AND end_ts <= ?)
               OR (state = 'ENDING_SOON' AND end_ts <= ?)
            ORDER BY end_ts ASC
            LIMIT ?
        """, [now, now + ending_soon_threshold_ms, now, limit]).fetchall()
        return [row["auction_id"] for row in rows]

    def list_unordered_winners(self, limit: int = 200) -> List[str]:
        """Ended auctions with a winner but no order yet."""
        rows = self._execute("""
            SELECT auction_id FROM auctions
            WHERE state = 'ENDED' AND winner_id IS NOT NULL AND order_id IS NULL
            ORDER BY updated_ts ASC
            LIMIT ?
        """, [limit]).fetchall()
        return [row["auction_id"] for row in rows]

    def get_status_summary(self) -> Dict[str, int]:
        """Count of auctions per state."""
        rows = self._execute(
            "SELECT state, COUNT(*) AS count FROM auctions GROUP BY state"
        ).fetchall()
        return {row["state"]: row["count"] for row in rows}

    def fetch_all_auctions(self) -> List[dict]:
        rows = self._execute("SELECT * FROM auctions").fetchall()
        return [dict(row) for row in rows]

    # -------------------------------------------------------------------------
    # Bids
    # -------------------------------------------------------------------------

    def get_bids(
        self,
        auction_id: str,
        since_ts: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Bid]:
        """Bids in acceptance order, optionally only those after since_ts."""
        query = "SELECT * FROM bids WHERE auction_id = ?"
        params: List[Any] = [auction_id]

        if since_ts is not None:
            query += " AND placed_ts > ?"
            params.append(since_ts)

        query += " ORDER BY seq ASC"

        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        rows = self._execute(query, params).fetchall()
        return [_row_to_bid(row) for row in rows]

    def get_bid_stats(self, auction_id: str) -> dict:
        """Total bids, unique bidders and the bid range for an auction."""
        row = self._execute("""
            SELECT
                COUNT(*) AS total_bids,
                COUNT(DISTINCT bidder_id) AS unique_bidders,
                MAX(amount) AS highest_bid,
                MIN(amount) AS lowest_bid,
                SUM(is_automatic) AS automatic_bids
            FROM bids
            WHERE auction_id = ?
        """, [auction_id]).fetchone()

        return {
            "total_bids": row["total_bids"] or 0,
            "unique_bidders": row["unique_bidders"] or 0,
            "highest_bid": row["highest_bid"] or 0,
            "lowest_bid": row["lowest_bid"] or 0,
            "automatic_bids": row["automatic_bids"] or 0,
        }

    def get_bidder_ids(self, auction_id: str) -> List[str]:
        rows = self._execute(
            "SELECT DISTINCT bidder_id FROM bids WHERE auction_id = ? ORDER BY bidder_id",
            [auction_id],
        ).fetchall()
        return [row["bidder_id"] for row in rows]

    def fetch_all_bids(self) -> List[dict]:
        rows = self._execute("SELECT * FROM bids ORDER BY seq ASC").fetchall()
        return [dict(row) for row in rows]

    # -------------------------------------------------------------------------
    # Mandates
    # -------------------------------------------------------------------------

    def load_active_mandates(self, auction_id: str) -> List[AutoBidMandate]:
        rows = self._execute("""
            SELECT * FROM mandates
            WHERE auction_id = ? AND active = 1
            ORDER BY created_ts ASC
        """, [auction_id]).fetchall()
        return [_row_to_mandate(row) for row in rows]

    def save_mandate(self, mandate: AutoBidMandate) -> None:
        """Insert a mandate or update its active flag."""
        with self.transaction():
            self._execute("""
                INSERT INTO mandates (
                    mandate_id, auction_id, bidder_id, max_amount, increment,
                    currency, active, created_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(mandate_id) DO UPDATE SET active = excluded.active
            """, [
                mandate.mandate_id,
                mandate.auction_id,
                mandate.bidder_id,
                mandate.max_amount.amount,
                mandate.increment.amount,
                mandate.max_amount.currency,
                1 if mandate.active else 0,
                mandate.created_ts,
            ])

    # -------------------------------------------------------------------------
    # Activity log
    # -------------------------------------------------------------------------

    def record_activity(self, activity: AuctionActivity) -> None:
        self._execute("""
            INSERT INTO activities (auction_id, activity_type, actor_id, ts, metadata_json)
            VALUES (?, ?, ?, ?, ?)
        """, [
            activity.auction_id,
            activity.activity_type.name,
            activity.actor_id,
            activity.ts,
            json.dumps(activity.metadata) if activity.metadata else None,
        ])

    def get_activities(self, auction_id: str) -> List[AuctionActivity]:
        rows = self._execute("""
            SELECT * FROM activities WHERE auction_id = ? ORDER BY id ASC
        """, [auction_id]).fetchall()
        return [
            AuctionActivity(
                auction_id=row["auction_id"],
                activity_type=ActivityType[row["activity_type"]],
                ts=row["ts"],
                actor_id=row["actor_id"],
                metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def get_order_for_auction(self, auction_id: str) -> Optional[dict]:
        row = self._execute(
            "SELECT * FROM orders WHERE auction_id = ?", [auction_id]
        ).fetchone()
        return dict(row) if row else None

    def insert_order(
        self,
        order_id: str,
        auction_id: str,
        winner_id: str,
        amount: Money,
        created_ts: int,
    ) -> None:
        with self.transaction():
            self._execute("""
                INSERT INTO orders (order_id, auction_id, winner_id, amount, currency, status, created_ts)
                VALUES (?, ?, ?, ?, ?, 'PENDING', ?)
            """, [order_id, auction_id, winner_id, amount.amount, amount.currency, created_ts])


def _amount_or_none(money: Optional[Money]) -> Optional[int]:
    return money.amount if money is not None else None


def _money_or_none(amount: Optional[int], currency: str) -> Optional[Money]:
    return Money(amount, currency) if amount is not None else None


def _row_to_auction(row: sqlite3.Row) -> Auction:
    currency = row["currency"]
    return Auction(
        auction_id=row["auction_id"],
        product_id=row["product_id"],
        seller_id=row["seller_id"],
        starting_price=Money(row["starting_price"], currency),
        current_bid=Money(row["current_bid"], currency),
        min_increment=Money(row["min_increment"], currency),
        max_extensions=row["max_extensions"],
        state=AuctionState[row["state"]],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        reserve_price=_money_or_none(row["reserve_price"], currency),
        buy_now_price=_money_or_none(row["buy_now_price"], currency),
        bid_count=row["bid_count"],
        leader_id=row["leader_id"],
        winner_id=row["winner_id"],
        anti_sniping_window_ms=row["anti_sniping_window_ms"],
        anti_sniping_extension_ms=row["anti_sniping_extension_ms"],
        extension_count=row["extension_count"],
        last_extension_bid_id=row["last_extension_bid_id"],
        cancel_reason=row["cancel_reason"],
        order_id=row["order_id"],
        created_ts=row["created_ts"],
        updated_ts=row["updated_ts"],
    )


def _row_to_bid(row: sqlite3.Row) -> Bid:
    currency = row["currency"]
    return Bid(
        bid_id=row["bid_id"],
        auction_id=row["auction_id"],
        bidder_id=row["bidder_id"],
        amount=Money(row["amount"], currency),
        placed_ts=row["placed_ts"],
        is_automatic=bool(row["is_automatic"]),
        proxy_max_amount=_money_or_none(row["proxy_max_amount"], currency),
    )


def _row_to_mandate(row: sqlite3.Row) -> AutoBidMandate:
    currency = row["currency"]
    return AutoBidMandate(
        mandate_id=row["mandate_id"],
        auction_id=row["auction_id"],
        bidder_id=row["bidder_id"],
        max_amount=Money(row["max_amount"], currency),
        increment=Money(row["increment"], currency),
        created_ts=row["created_ts"],
        active=bool(row["active"]),
    )
