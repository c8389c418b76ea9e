"""Position store: the lobby's record of each paired trade."""

import sqlite3
from datetime import datetime
from typing import Optional

from pairlobby.db.store import DataStore, normalize_address
from pairlobby.models import PositionRecord

_COLUMNS = (
    "position_id, player, lobby_id, long_asset, short_asset, leverage, usd_value, "
    "margin_used, entry_price_long, entry_price_short, state, mark_value, "
    "realized_value, order_id, opened_at, closed_at"
)


def _row_to_record(row: sqlite3.Row) -> PositionRecord:
    return PositionRecord(
        position_id=row["position_id"],
        player=row["player"],
        lobby_id=row["lobby_id"],
        long_asset=row["long_asset"],
        short_asset=row["short_asset"],
        leverage=row["leverage"],
        usd_value=row["usd_value"],
        margin_used=row["margin_used"],
        entry_price_long=row["entry_price_long"],
        entry_price_short=row["entry_price_short"],
        state=row["state"],
        mark_value=row["mark_value"],
        realized_value=row["realized_value"],
        order_id=row["order_id"],
        opened_at=datetime.fromisoformat(row["opened_at"]),
        closed_at=datetime.fromisoformat(row["closed_at"]) if row["closed_at"] else None,
    )


class PositionStore:
    """Durable record of open and closed positions.

    A closed position never changes again; :meth:`mark_closed` only
    succeeds on the first call for a given position.
    """

    def __init__(self, data_store: DataStore):
        self._data_store = data_store

    def insert(self, record: PositionRecord, conn: Optional[sqlite3.Connection] = None) -> None:
        """Insert a new position.

        Raises:
            sqlite3.IntegrityError: If the position ID already exists.
        """
        with self._data_store.session(conn) as c:
            c.execute(
                f"INSERT INTO positions ({_COLUMNS}) VALUES ({', '.join('?' * 16)})",
                (
                    record.position_id,
                    normalize_address(record.player),
                    record.lobby_id,
                    record.long_asset,
                    record.short_asset,
                    record.leverage,
                    record.usd_value,
                    record.margin_used,
                    record.entry_price_long,
                    record.entry_price_short,
                    record.state,
                    record.mark_value,
                    record.realized_value,
                    record.order_id,
                    record.opened_at.isoformat(),
                    record.closed_at.isoformat() if record.closed_at else None,
                ),
            )

    def get(self, position_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[PositionRecord]:
        """Get a position by ID."""
        query = f"SELECT {_COLUMNS} FROM positions WHERE position_id = ?"
        if conn is not None:
            row = conn.execute(query, (position_id,)).fetchone()
        else:
            with self._data_store.reader() as c:
                row = c.execute(query, (position_id,)).fetchone()
        return _row_to_record(row) if row else None

    def list_positions(
        self,
        lobby_id: str,
        player: Optional[str] = None,
        state: Optional[str] = None,
    ) -> list[PositionRecord]:
        """List positions in a lobby, oldest first.

        Args:
            lobby_id: Lobby identifier.
            player: Restrict to one owner.
            state: Restrict to ``open`` or ``closed``.
        """
        query = f"SELECT {_COLUMNS} FROM positions WHERE lobby_id = ?"
        params: list = [lobby_id]
        if player is not None:
            query += " AND player = ?"
            params.append(normalize_address(player))
        if state is not None:
            query += " AND state = ?"
            params.append(state)
        query += " ORDER BY opened_at, position_id"
        with self._data_store.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_open(self, lobby_id: str, player: Optional[str] = None) -> list[PositionRecord]:
        return self.list_positions(lobby_id, player=player, state="open")

    def update_marks(self, marks: dict[str, float], conn: Optional[sqlite3.Connection] = None) -> int:
        """Store the latest mark of each open position.

        Closed positions are left untouched.

        Returns:
            Number of positions updated.
        """
        updated = 0
        with self._data_store.session(conn) as c:
            for position_id, mark in marks.items():
                cursor = c.execute(
                    "UPDATE positions SET mark_value = ? WHERE position_id = ? AND state = 'open'",
                    (mark, position_id),
                )
                updated += cursor.rowcount
        return updated

    def mark_closed(
        self,
        position_id: str,
        realized_value: float,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Transition a position from open to closed.

        Returns:
            True if this call closed the position, False if it was already closed.
        """
        with self._data_store.session(conn) as c:
            cursor = c.execute(
                """
                UPDATE positions
                SET state = 'closed', realized_value = ?, mark_value = 0, closed_at = ?
                WHERE position_id = ? AND state = 'open'
                """,
                (realized_value, datetime.now().isoformat(), position_id),
            )
            return cursor.rowcount > 0

    def sum_open_marks(self, player: str, lobby_id: str, conn: Optional[sqlite3.Connection] = None) -> float:
        """Sum the marks of a player's open positions in a lobby."""
        query = """
            SELECT COALESCE(SUM(mark_value), 0) AS total
            FROM positions WHERE player = ? AND lobby_id = ? AND state = 'open'
        """
        params = (normalize_address(player), lobby_id)
        if conn is not None:
            return conn.execute(query, params).fetchone()["total"]
        with self._data_store.reader() as c:
            return c.execute(query, params).fetchone()["total"]
