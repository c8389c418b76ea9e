"""SQLite persistence for lobbies, ledgers and positions."""

from pairlobby.db.ledger import LedgerStore
from pairlobby.db.positions import PositionStore
from pairlobby.db.store import DataStore, normalize_address

__all__ = [
    "DataStore",
    "LedgerStore",
    "PositionStore",
    "normalize_address",
]
