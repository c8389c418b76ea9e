"""Ledger store: per-player cash balances and balance history."""

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from pairlobby.db.store import DataStore, normalize_address
from pairlobby.errors import InsufficientFunds, NotFound
from pairlobby.models import BalanceHistoryEntry, LedgerAccount

logger = logging.getLogger(__name__)


class LedgerStore:
    """Owns every write to a ledger row.

    ``debit``, ``credit`` and ``set_value_in_positions`` are the only
    mutators once an account is open. Each appends exactly one balance
    history entry in the same transaction as the row update and returns
    the resulting balance.
    """

    def __init__(self, data_store: DataStore):
        self._data_store = data_store

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> LedgerAccount:
        return LedgerAccount(
            player=row["player"],
            lobby_id=row["lobby_id"],
            balance=row["balance"],
            value_in_positions=row["value_in_positions"],
            joined_at=datetime.fromisoformat(row["joined_at"]),
        )

    def _fetch(self, conn: sqlite3.Connection, player: str, lobby_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT player, lobby_id, balance, value_in_positions, joined_at
            FROM ledgers WHERE player = ? AND lobby_id = ?
            """,
            (player, lobby_id),
        ).fetchone()

    def _append_history(self, conn: sqlite3.Connection, player: str, lobby_id: str) -> float:
        """Snapshot the row into balance_history and return its balance."""
        row = self._fetch(conn, player, lobby_id)
        conn.execute(
            """
            INSERT INTO balance_history (player, lobby_id, balance, value_in_positions, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (player, lobby_id, row["balance"], row["value_in_positions"], datetime.now().isoformat()),
        )
        return row["balance"]

    # ==================== Accounts ====================

    def open_account(self, player: str, lobby_id: str, buy_in: float) -> LedgerAccount:
        """Create a player's ledger for a lobby with ``balance = buy_in``.

        Raises:
            ValueError: If the player already joined the lobby or buy_in is not positive.
        """
        if buy_in <= 0:
            raise ValueError("Buy-in must be positive")
        player = normalize_address(player)
        with self._data_store.transaction() as conn:
            if self._fetch(conn, player, lobby_id) is not None:
                raise ValueError(f"{player} already joined lobby {lobby_id}")
            conn.execute(
                """
                INSERT INTO ledgers (player, lobby_id, balance, value_in_positions, joined_at)
                VALUES (?, ?, ?, 0, ?)
                """,
                (player, lobby_id, buy_in, datetime.now().isoformat()),
            )
            self._append_history(conn, player, lobby_id)
            account = self._row_to_account(self._fetch(conn, player, lobby_id))
        logger.info("Opened ledger for %s in lobby %s with %.2f", player, lobby_id, buy_in)
        return account

    def get_account(self, player: str, lobby_id: str) -> Optional[LedgerAccount]:
        """Get a player's ledger, or None if they have not joined."""
        with self._data_store.reader() as conn:
            row = self._fetch(conn, normalize_address(player), lobby_id)
        return self._row_to_account(row) if row else None

    def get_accounts(self, lobby_id: str) -> list[LedgerAccount]:
        """Get every ledger in a lobby in join order."""
        with self._data_store.reader() as conn:
            rows = conn.execute(
                """
                SELECT player, lobby_id, balance, value_in_positions, joined_at
                FROM ledgers WHERE lobby_id = ? ORDER BY id
                """,
                (lobby_id,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    # ==================== Mutations ====================

    def debit(
        self,
        player: str,
        lobby_id: str,
        amount: float,
        *,
        value_in_positions: Optional[float] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> float:
        """Remove cash from a ledger.

        The update only applies while ``balance >= amount``, so two
        concurrent debits can never overdraw the account.

        Args:
            player: Player address.
            lobby_id: Lobby identifier.
            amount: Non-negative amount to remove.
            value_in_positions: Replacement position value written in the same update.
            conn: Transaction to join.

        Returns:
            Balance after the debit.

        Raises:
            InsufficientFunds: If the balance is lower than ``amount``.
            NotFound: If the ledger does not exist.
        """
        if amount < 0:
            raise ValueError("Debit amount must be non-negative")
        player = normalize_address(player)
        with self._data_store.session(conn) as c:
            cursor = c.execute(
                """
                UPDATE ledgers
                SET balance = balance - ?,
                    value_in_positions = COALESCE(?, value_in_positions)
                WHERE player = ? AND lobby_id = ? AND balance >= ?
                """,
                (amount, value_in_positions, player, lobby_id, amount),
            )
            if cursor.rowcount == 0:
                row = self._fetch(c, player, lobby_id)
                if row is None:
                    raise NotFound(f"No ledger for {player} in lobby {lobby_id}")
                raise InsufficientFunds(player, lobby_id, amount, row["balance"])
            return self._append_history(c, player, lobby_id)

    def credit(
        self,
        player: str,
        lobby_id: str,
        amount: float,
        *,
        value_in_positions: Optional[float] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> float:
        """Add cash to a ledger.

        A negative realized value on a liquidated position is floored so
        the balance stays non-negative.

        Returns:
            Balance after the credit.

        Raises:
            NotFound: If the ledger does not exist.
        """
        player = normalize_address(player)
        with self._data_store.session(conn) as c:
            cursor = c.execute(
                """
                UPDATE ledgers
                SET balance = MAX(balance + ?, 0),
                    value_in_positions = COALESCE(?, value_in_positions)
                WHERE player = ? AND lobby_id = ?
                """,
                (amount, value_in_positions, player, lobby_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"No ledger for {player} in lobby {lobby_id}")
            return self._append_history(c, player, lobby_id)

    def set_value_in_positions(
        self,
        player: str,
        lobby_id: str,
        value: float,
        conn: Optional[sqlite3.Connection] = None,
    ) -> float:
        """Overwrite the mark-to-market value of a player's open positions.

        Returns:
            Balance (unchanged) after the write.

        Raises:
            NotFound: If the ledger does not exist.
        """
        player = normalize_address(player)
        with self._data_store.session(conn) as c:
            cursor = c.execute(
                "UPDATE ledgers SET value_in_positions = ? WHERE player = ? AND lobby_id = ?",
                (value, player, lobby_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"No ledger for {player} in lobby {lobby_id}")
            return self._append_history(c, player, lobby_id)

    # ==================== History ====================

    def get_history(
        self, player: str, lobby_id: str, limit: Optional[int] = None
    ) -> list[BalanceHistoryEntry]:
        """Get balance history for a ledger, oldest first.

        Args:
            limit: Return only the most recent ``limit`` entries.
        """
        query = """
            SELECT id, player, lobby_id, balance, value_in_positions, timestamp
            FROM balance_history WHERE player = ? AND lobby_id = ?
            ORDER BY id DESC
        """
        params: list = [normalize_address(player), lobby_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._data_store.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            BalanceHistoryEntry(
                id=row["id"],
                player=row["player"],
                lobby_id=row["lobby_id"],
                balance=row["balance"],
                value_in_positions=row["value_in_positions"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in reversed(rows)
        ]

    def count_history(self, player: str, lobby_id: str) -> int:
        with self._data_store.reader() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM balance_history WHERE player = ? AND lobby_id = ?",
                (normalize_address(player), lobby_id),
            ).fetchone()
        return row["n"]
