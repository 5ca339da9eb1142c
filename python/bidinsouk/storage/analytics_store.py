"""Marketplace analytics using DuckDB.

Holds a read-only copy of the auction ledger, refreshed from the SQLite
auction store, and answers reporting queries over it.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import duckdb

from ..config import DatabaseConfig

logger = logging.getLogger(__name__)


class AnalyticsStore:
    """DuckDB storage for auction reporting."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        if config.analytics_db == ":memory:":
            self.db_path = None
        else:
            self.db_path = Path(config.data_dir) / config.analytics_db
        self._conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> None:
        """Connect to the database."""
        if self.db_path is None:
            self._conn = duckdb.connect(":memory:")
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = duckdb.connect(str(self.db_path))
        self._create_tables()
        logger.info(f"Connected to analytics store: {self.db_path or ':memory:'}")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS auctions (
                auction_id VARCHAR PRIMARY KEY,
                seller_id VARCHAR,
                currency VARCHAR,
                starting_price BIGINT,
                current_bid BIGINT,
                reserve_price BIGINT,
                state VARCHAR,
                bid_count INTEGER,
                winner_id VARCHAR,
                extension_count INTEGER,
                created_ts BIGINT,
                end_ts BIGINT
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS bids (
                bid_id VARCHAR PRIMARY KEY,
                auction_id VARCHAR,
                bidder_id VARCHAR,
                amount BIGINT,
                currency VARCHAR,
                placed_ts BIGINT,
                is_automatic BOOLEAN
            )
        """)

    def refresh(self, auctions: List[dict], bids: List[dict]) -> None:
        """Replace the ledger copy with rows read from the auction store."""
        self._conn.execute("BEGIN TRANSACTION")
        try:
            self._conn.execute("DELETE FROM bids")
            self._conn.execute("DELETE FROM auctions")

            if auctions:
                self._conn.executemany("""
                    INSERT INTO auctions VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    [
                        a["auction_id"], a["seller_id"], a["currency"],
                        a["starting_price"], a["current_bid"], a["reserve_price"],
                        a["state"], a["bid_count"], a["winner_id"],
                        a["extension_count"], a["created_ts"], a["end_ts"],
                    ]
                    for a in auctions
                ])

            if bids:
                self._conn.executemany("""
                    INSERT INTO bids VALUES (?, ?, ?, ?, ?, ?, ?)
                """, [
                    [
                        b["bid_id"], b["auction_id"], b["bidder_id"], b["amount"],
                        b["currency"], b["placed_ts"], bool(b["is_automatic"]),
                    ]
                    for b in bids
                ])
            self._conn.execute("COMMIT")
        except Exception:
            self._conn.execute("ROLLBACK")
            raise

        logger.info(f"Analytics refreshed: {len(auctions)} auctions, {len(bids)} bids")

    def sell_through(self) -> dict:
        """Share of ended auctions that produced a winner."""
        ended, sold, passed = self._conn.execute("""
            SELECT
                COUNT(*),
                COUNT(*) FILTER (WHERE winner_id IS NOT NULL),
                COUNT(*) FILTER (WHERE winner_id IS NULL)
            FROM auctions
            WHERE state = 'ENDED'
        """).fetchone()

        return {
            "ended": ended,
            "sold": sold,
            "passed": passed,
            "sell_through_rate": sold / ended if ended else 0.0,
        }

    def bid_activity(self) -> dict:
        """Bid volume across auctions that received at least one bid."""
        row = self._conn.execute("""
            SELECT
                COUNT(*) AS total_bids,
                COUNT(DISTINCT auction_id) AS auctions_with_bids,
                COUNT(DISTINCT bidder_id) AS unique_bidders,
                COUNT(*) FILTER (WHERE is_automatic) AS automatic_bids
            FROM bids
        """).fetchone()
        total_bids, auctions_with_bids, unique_bidders, automatic_bids = row

        extended = self._conn.execute(
            "SELECT COUNT(*) FROM auctions WHERE extension_count > 0"
        ).fetchone()[0]

        return {
            "total_bids": total_bids,
            "auctions_with_bids": auctions_with_bids,
            "unique_bidders": unique_bidders,
            "bids_per_auction": total_bids / auctions_with_bids if auctions_with_bids else 0.0,
            "automatic_share": automatic_bids / total_bids if total_bids else 0.0,
            "extended_auctions": extended,
        }

    def top_bidders(self, limit: int = 10) -> List[dict]:
        rows = self._conn.execute("""
            SELECT
                bidder_id,
                COUNT(*) AS bids,
                COUNT(DISTINCT auction_id) AS auctions,
                MAX(amount) AS highest_bid
            FROM bids
            GROUP BY bidder_id
            ORDER BY bids DESC, bidder_id ASC
            LIMIT ?
        """, [limit]).fetchall()

        return [
            {"bidder_id": r[0], "bids": r[1], "auctions": r[2], "highest_bid": r[3]}
            for r in rows
        ]

    def revenue(self) -> Dict[str, dict]:
        """Gross sold value per currency, in minor units."""
        rows = self._conn.execute("""
            SELECT currency, COUNT(*), SUM(current_bid), AVG(current_bid - starting_price)
            FROM auctions
            WHERE state = 'ENDED' AND winner_id IS NOT NULL
            GROUP BY currency
            ORDER BY currency
        """).fetchall()

        return {
            r[0]: {"sold": r[1], "gross": int(r[2] or 0), "avg_uplift": float(r[3] or 0)}
            for r in rows
        }

    def report(self, top: int = 10) -> dict:
        """Full analytics report."""
        return {
            "sell_through": self.sell_through(),
            "bid_activity": self.bid_activity(),
            "top_bidders": self.top_bidders(top),
            "revenue": self.revenue(),
        }
