"""
SQLite storage for the copy relay.

Tables:
- source_trades: trades observed by the monitor, with processing status
- copy_executions: the execution ledger, one row per (trader, trade, follower)
- copy_pnl_snapshots: periodic follower PnL snapshots

The store is shared with the monitor process. Cross-process coordination
relies on conditional status updates and the ledger's UNIQUE index only.

Fail-loud: DB errors raise CopyRelayError(DATABASE), never silent.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Set

from copyrelay.errors import CopyRelayError, ErrorKind
from copyrelay.schema import (
    ExecutionRecord,
    RecordStatus,
    Side,
    SourceTrade,
    TradeStatus,
)

# Schema version for migration tracking
SCHEMA_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CopyRelayStore:
    """SQLite document store for trades, ledger and PnL snapshots."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as e:
            raise CopyRelayError(ErrorKind.DATABASE, f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise CopyRelayError(ErrorKind.DATABASE, str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema. Idempotent."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            cursor.execute("SELECT value FROM metadata WHERE key = 'schema_version'")
            row = cursor.fetchone()
            if row:
                existing_version = int(row[0])
                if existing_version != SCHEMA_VERSION:
                    raise CopyRelayError(
                        ErrorKind.CONFIGURATION,
                        f"Schema version mismatch: expected {SCHEMA_VERSION}, got {existing_version}",
                    )
            else:
                cursor.execute(
                    "INSERT INTO metadata (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )

            # Observed trades - written by the monitor, never deleted
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS source_trades (
                    id TEXT PRIMARY KEY,
                    source_address TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'TRADE',
                    condition_id TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    side TEXT NOT NULL,
                    usdc_size REAL NOT NULL,
                    size REAL NOT NULL DEFAULT 0,
                    price REAL NOT NULL,
                    timestamp TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    status_detail TEXT,
                    slug TEXT,
                    outcome TEXT,
                    transaction_hash TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_source_trades_status
                ON source_trades(source_address, status)
                """
            )

            # Execution ledger - at most one row per (trader, trade, follower)
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS copy_executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    trader_address TEXT NOT NULL,
                    activity_id TEXT NOT NULL,
                    follower_address TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('success', 'failed')),
                    executed_at TEXT NOT NULL,
                    filled_size REAL,
                    preview INTEGER NOT NULL DEFAULT 0,
                    detail TEXT,
                    UNIQUE(trader_address, activity_id, follower_address)
                )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS copy_pnl_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    follower_address TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    total_value_usd REAL NOT NULL,
                    total_initial_usd REAL NOT NULL,
                    unrealized_pnl_usd REAL NOT NULL,
                    unrealized_pnl_pct REAL NOT NULL,
                    realized_pnl_usd REAL NOT NULL,
                    realized_pnl_pct REAL NOT NULL,
                    position_count INTEGER NOT NULL
                )
                """
            )

            conn.commit()

    # Source trade methods

    def insert_trade(self, trade: SourceTrade) -> bool:
        """
        Insert an observed trade. Used by the monitor side and by tests.

        Returns:
            False if a trade with the same id already exists
        """
        now = _now()
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO source_trades (
                    id, source_address, condition_id, asset, side, usdc_size,
                    size, price, timestamp, status, slug, outcome,
                    transaction_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.id,
                    trade.source_address,
                    trade.condition_id,
                    trade.asset,
                    trade.side.value,
                    trade.usdc_size,
                    trade.size,
                    trade.price,
                    trade.timestamp.isoformat(),
                    trade.status.value,
                    trade.slug,
                    trade.outcome,
                    trade.transaction_hash,
                    now,
                    now,
                ),
            )
            return cursor.rowcount == 1

    def get_pending_trades(self, source_addresses: Iterable[str]) -> List[SourceTrade]:
        """Pending TRADE rows for the given tracked accounts, oldest first."""
        addresses = [a.lower() for a in source_addresses]
        if not addresses:
            return []

        placeholders = ", ".join("?" for _ in addresses)
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM source_trades
                WHERE type = 'TRADE' AND status = ?
                  AND source_address IN ({placeholders})
                ORDER BY timestamp ASC
                """,
                (TradeStatus.PENDING.value, *addresses),
            ).fetchall()
        return [self._row_to_trade(row) for row in rows]

    def get_trade(self, trade_id: str) -> Optional[SourceTrade]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM source_trades WHERE id = ?", (trade_id,)
            ).fetchone()
        return self._row_to_trade(row) if row else None

    def get_status_detail(self, trade_id: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT status_detail FROM source_trades WHERE id = ?", (trade_id,)
            ).fetchone()
        return row[0] if row else None

    def transition(
        self,
        trade_id: str,
        from_status: TradeStatus,
        to_status: TradeStatus,
        detail: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set status update.

        Returns:
            True if this caller moved the trade, False if it was not in from_status
        """
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE source_trades
                SET status = ?, status_detail = COALESCE(?, status_detail), updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (to_status.value, detail, _now(), trade_id, from_status.value),
            )
            return cursor.rowcount == 1

    def set_status(
        self, trade_id: str, status: TradeStatus, detail: Optional[str] = None
    ) -> None:
        """Unconditional status update (terminal outcomes)."""
        with self.get_connection() as conn:
            conn.execute(
                """
                UPDATE source_trades
                SET status = ?, status_detail = COALESCE(?, status_detail), updated_at = ?
                WHERE id = ?
                """,
                (status.value, detail, _now(), trade_id),
            )

    def release_buffered(self) -> int:
        """Return trades stranded in BUFFERED (lost with a previous process) to PENDING."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE source_trades SET status = ?, updated_at = ? WHERE status = ?",
                (TradeStatus.PENDING.value, _now(), TradeStatus.BUFFERED.value),
            )
            return cursor.rowcount

    def _row_to_trade(self, row: sqlite3.Row) -> SourceTrade:
        return SourceTrade(
            id=row["id"],
            source_address=row["source_address"],
            condition_id=row["condition_id"],
            asset=row["asset"],
            side=Side(row["side"]),
            usdc_size=row["usdc_size"],
            size=row["size"],
            price=row["price"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            status=TradeStatus(row["status"]),
            slug=row["slug"],
            outcome=row["outcome"],
            transaction_hash=row["transaction_hash"],
        )

    # Execution ledger methods

    def record_execution(self, record: ExecutionRecord) -> bool:
        """
        Write a ledger entry.

        Returns:
            False if an entry for (trader, trade, follower) already exists
        """
        with self.get_connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO copy_executions (
                        trader_address, activity_id, follower_address, status,
                        executed_at, filled_size, preview, detail
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.trader_address.lower(),
                        record.activity_id,
                        record.follower_address.lower(),
                        record.status.value,
                        record.executed_at.isoformat(),
                        record.filled_size,
                        1 if record.preview else 0,
                        record.detail,
                    ),
                )
            except sqlite3.IntegrityError:
                return False
            return True

    def executed_followers(self, trader_address: str, activity_id: str) -> Set[str]:
        """Follower addresses that already have a ledger entry for this trade."""
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT follower_address FROM copy_executions
                WHERE trader_address = ? AND activity_id = ?
                """,
                (trader_address.lower(), activity_id),
            ).fetchall()
        return {row[0] for row in rows}

    def count_executions(self, trader_address: str, activity_id: str) -> int:
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM copy_executions
                WHERE trader_address = ? AND activity_id = ?
                """,
                (trader_address.lower(), activity_id),
            ).fetchone()
        return row[0]

    def get_executions(
        self,
        activity_id: Optional[str] = None,
        follower_address: Optional[str] = None,
    ) -> List[ExecutionRecord]:
        query = "SELECT * FROM copy_executions WHERE 1 = 1"
        params: list = []
        if activity_id is not None:
            query += " AND activity_id = ?"
            params.append(activity_id)
        if follower_address is not None:
            query += " AND follower_address = ?"
            params.append(follower_address.lower())
        query += " ORDER BY id ASC"

        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            ExecutionRecord(
                trader_address=row["trader_address"],
                activity_id=row["activity_id"],
                follower_address=row["follower_address"],
                status=RecordStatus(row["status"]),
                executed_at=datetime.fromisoformat(row["executed_at"]),
                filled_size=row["filled_size"],
                preview=bool(row["preview"]),
                detail=row["detail"],
            )
            for row in rows
        ]

    # PnL snapshot methods

    def save_pnl_snapshot(
        self,
        follower_address: str,
        timestamp: datetime,
        total_value_usd: float,
        total_initial_usd: float,
        unrealized_pnl_usd: float,
        unrealized_pnl_pct: float,
        realized_pnl_usd: float,
        realized_pnl_pct: float,
        position_count: int,
    ) -> int:
        """Record a follower PnL snapshot. Returns row id."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO copy_pnl_snapshots (
                    follower_address, timestamp, total_value_usd, total_initial_usd,
                    unrealized_pnl_usd, unrealized_pnl_pct, realized_pnl_usd,
                    realized_pnl_pct, position_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    follower_address.lower(),
                    timestamp.isoformat(),
                    total_value_usd,
                    total_initial_usd,
                    unrealized_pnl_usd,
                    unrealized_pnl_pct,
                    realized_pnl_usd,
                    realized_pnl_pct,
                    position_count,
                ),
            )
            return cursor.lastrowid

    def get_pnl_snapshots(self, follower_address: str, limit: int = 30) -> List[dict]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM copy_pnl_snapshots
                WHERE follower_address = ?
                ORDER BY timestamp DESC LIMIT ?
                """,
                (follower_address.lower(), limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_stats(self) -> dict:
        """Get overall storage stats"""
        with self.get_connection() as conn:
            cursor = conn.execute(
                "SELECT status, COUNT(*) FROM source_trades GROUP BY status"
            )
            trade_stats = {row[0]: row[1] for row in cursor.fetchall()}

            cursor = conn.execute(
                "SELECT status, COUNT(*) FROM copy_executions GROUP BY status"
            )
            execution_stats = {row[0]: row[1] for row in cursor.fetchall()}

            cursor = conn.execute("SELECT COUNT(*) FROM copy_executions WHERE preview = 1")
            preview_count = cursor.fetchone()[0]

        return {
            "trade_stats": trade_stats,
            "execution_stats": execution_stats,
            "preview_executions": preview_count,
        }
