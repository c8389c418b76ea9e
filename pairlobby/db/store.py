"""SQLite data store for pairlobby."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pairlobby.models import Lobby, ReconciliationItem


def normalize_address(address: str) -> str:
    """Wallet addresses are compared case-insensitively."""
    return address.strip().lower()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DataStore:
    """SQLite-based data store shared by the ledger and position stores.

    Every write runs inside a ``BEGIN IMMEDIATE`` transaction, so SQLite
    admits a single writer at a time and a ledger row can never be updated
    from a stale read.
    """

    REQUIRED_TABLES = [
        "lobbies",
        "ledgers",
        "balance_history",
        "positions",
        "simulated_positions",
        "reconciliation",
    ]

    def __init__(self, db_path: Path):
        """Initialize the data store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._ensure_db_dir()
        self._init_schema()

    def _ensure_db_dir(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection in autocommit mode."""
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes atomically.

        Yields:
            Connection holding the database write lock until the block ends.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def session(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction, or open a new one."""
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Connection for read-only queries."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema on first run."""
        conn = self._get_connection()
        try:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lobbies (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    buy_in REAL NOT NULL,
                    is_demo INTEGER NOT NULL DEFAULT 1,
                    start_time TEXT,
                    end_time TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            # Ledger rows, one per player per lobby; id order is join order
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ledgers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    player TEXT NOT NULL,
                    lobby_id TEXT NOT NULL,
                    balance REAL NOT NULL CHECK (balance >= 0),
                    value_in_positions REAL NOT NULL DEFAULT 0,
                    joined_at TEXT NOT NULL,
                    UNIQUE(player, lobby_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS balance_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    player TEXT NOT NULL,
                    lobby_id TEXT NOT NULL,
                    balance REAL NOT NULL,
                    value_in_positions REAL NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_balance_history_account
                ON balance_history (player, lobby_id, id)
            """)
            cursor.execute("""
                CREATE TRIGGER IF NOT EXISTS balance_history_no_update
                BEFORE UPDATE ON balance_history
                BEGIN
                    SELECT RAISE(ABORT, 'balance history is append-only');
                END
            """)
            cursor.execute("""
                CREATE TRIGGER IF NOT EXISTS balance_history_no_delete
                BEFORE DELETE ON balance_history
                BEGIN
                    SELECT RAISE(ABORT, 'balance history is append-only');
                END
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    position_id TEXT PRIMARY KEY,
                    player TEXT NOT NULL,
                    lobby_id TEXT NOT NULL,
                    long_asset TEXT NOT NULL,
                    short_asset TEXT NOT NULL,
                    leverage REAL NOT NULL,
                    usd_value REAL NOT NULL,
                    margin_used REAL NOT NULL,
                    entry_price_long REAL,
                    entry_price_short REAL,
                    state TEXT NOT NULL DEFAULT 'open',
                    mark_value REAL NOT NULL DEFAULT 0,
                    realized_value REAL,
                    order_id TEXT,
                    opened_at TEXT NOT NULL,
                    closed_at TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_positions_owner
                ON positions (lobby_id, player, state)
            """)

            # Paper venue book, independent of the lobby's position records
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS simulated_positions (
                    position_id TEXT PRIMARY KEY,
                    address TEXT NOT NULL,
                    lobby_id TEXT NOT NULL,
                    long_asset TEXT NOT NULL,
                    short_asset TEXT NOT NULL,
                    leverage REAL NOT NULL,
                    usd_value REAL NOT NULL,
                    entry_price_long REAL NOT NULL,
                    entry_price_short REAL NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS reconciliation (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    player TEXT NOT NULL,
                    lobby_id TEXT NOT NULL,
                    order_id TEXT,
                    position_id TEXT,
                    amount REAL,
                    detail TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    resolved INTEGER NOT NULL DEFAULT 0
                )
            """)
        finally:
            conn.close()

    def get_tables(self) -> list[str]:
        """Get list of all tables in the database."""
        with self.reader() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            )
            return [row["name"] for row in cursor.fetchall()]

    # ==================== Lobbies ====================

    def save_lobby(self, lobby: Lobby) -> None:
        """Save or update lobby metadata.

        Args:
            lobby: Lobby to save.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO lobbies
                (id, name, buy_in, is_demo, start_time, end_time, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    lobby.id,
                    lobby.name,
                    lobby.buy_in,
                    1 if lobby.is_demo else 0,
                    lobby.start_time.isoformat() if lobby.start_time else None,
                    lobby.end_time.isoformat() if lobby.end_time else None,
                    lobby.created_at.isoformat(),
                ),
            )

    def get_lobby(self, lobby_id: str) -> Optional[Lobby]:
        """Get a lobby by ID.

        Returns:
            Lobby, or None if it does not exist.
        """
        with self.reader() as conn:
            row = conn.execute(
                """
                SELECT id, name, buy_in, is_demo, start_time, end_time, created_at
                FROM lobbies WHERE id = ?
                """,
                (lobby_id,),
            ).fetchone()
        if row is None:
            return None
        return Lobby(
            id=row["id"],
            name=row["name"],
            buy_in=row["buy_in"],
            is_demo=bool(row["is_demo"]),
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            created_at=_dt(row["created_at"]),
        )

    def get_lobbies(self) -> list[Lobby]:
        """List all lobbies, newest first."""
        with self.reader() as conn:
            ids = [
                row["id"]
                for row in conn.execute("SELECT id FROM lobbies ORDER BY created_at DESC")
            ]
        return [lobby for lobby in (self.get_lobby(i) for i in ids) if lobby is not None]

    # ==================== Simulated positions ====================

    def save_simulated_position(self, row: dict, conn: Optional[sqlite3.Connection] = None) -> None:
        """Persist a paper-venue position.

        Args:
            row: Column values keyed by column name.
        """
        with self.session(conn) as c:
            c.execute(
                """
                INSERT INTO simulated_positions
                (position_id, address, lobby_id, long_asset, short_asset, leverage,
                 usd_value, entry_price_long, entry_price_short, created_at)
                VALUES (:position_id, :address, :lobby_id, :long_asset, :short_asset, :leverage,
                        :usd_value, :entry_price_long, :entry_price_short, :created_at)
                """,
                {**row, "address": normalize_address(row["address"])},
            )

    def get_simulated_position(self, position_id: str) -> Optional[dict]:
        """Get a paper-venue position by ID."""
        with self.reader() as conn:
            row = conn.execute(
                "SELECT * FROM simulated_positions WHERE position_id = ?",
                (position_id,),
            ).fetchone()
        return dict(row) if row else None

    def get_simulated_positions(self, address: str, lobby_id: Optional[str] = None) -> list[dict]:
        """Get paper-venue positions for an address, oldest first."""
        query = "SELECT * FROM simulated_positions WHERE address = ?"
        params: list = [normalize_address(address)]
        if lobby_id is not None:
            query += " AND lobby_id = ?"
            params.append(lobby_id)
        query += " ORDER BY created_at, position_id"
        with self.reader() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def delete_simulated_position(self, position_id: str) -> bool:
        """Delete a paper-venue position.

        Returns:
            True if a row was deleted.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM simulated_positions WHERE position_id = ?", (position_id,)
            )
            return cursor.rowcount > 0

    # ==================== Reconciliation ====================

    def add_reconciliation(
        self, item: ReconciliationItem, conn: Optional[sqlite3.Connection] = None
    ) -> int:
        """Record a venue event the ledger could not apply.

        Returns:
            ID of the new item.
        """
        with self.session(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO reconciliation
                (kind, player, lobby_id, order_id, position_id, amount, detail, created_at, resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    item.kind,
                    normalize_address(item.player),
                    item.lobby_id,
                    item.order_id,
                    item.position_id,
                    item.amount,
                    item.detail,
                    item.created_at.isoformat(),
                ),
            )
            return cursor.lastrowid

    def get_reconciliation(
        self, lobby_id: Optional[str] = None, include_resolved: bool = False
    ) -> list[ReconciliationItem]:
        """List reconciliation items, oldest first."""
        query = "SELECT * FROM reconciliation WHERE 1 = 1"
        params: list = []
        if lobby_id is not None:
            query += " AND lobby_id = ?"
            params.append(lobby_id)
        if not include_resolved:
            query += " AND resolved = 0"
        query += " ORDER BY id"
        with self.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ReconciliationItem(
                id=row["id"],
                kind=row["kind"],
                player=row["player"],
                lobby_id=row["lobby_id"],
                order_id=row["order_id"],
                position_id=row["position_id"],
                amount=row["amount"],
                detail=row["detail"],
                created_at=datetime.fromisoformat(row["created_at"]),
                resolved=bool(row["resolved"]),
            )
            for row in rows
        ]

    def resolve_reconciliation(self, item_id: int) -> bool:
        """Mark a reconciliation item as repaired.

        Returns:
            True if an unresolved item was updated.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE reconciliation SET resolved = 1 WHERE id = ? AND resolved = 0",
                (item_id,),
            )
            return cursor.rowcount > 0
