"""Exceptions raised by pairlobby stores, providers and the price oracle.

The position manager converts these into structured outcomes; nothing
below it swallows them.
"""


class PairLobbyError(Exception):
    """Base class for all pairlobby errors."""


class InsufficientFunds(PairLobbyError):
    """A debit would drive a ledger balance below zero."""

    def __init__(self, player: str, lobby_id: str, required: float, available: float):
        self.player = player
        self.lobby_id = lobby_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance. Required: {required:.2f}, Available: {available:.2f}"
        )


class NotFound(PairLobbyError):
    """A lobby, ledger account or position does not exist."""


class PriceUnavailable(PairLobbyError):
    """Neither a fresh nor a cached price exists for an asset."""

    def __init__(self, asset: str, reason: str = ""):
        self.asset = asset
        message = f"Price unavailable for {asset}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class VenueRejected(PairLobbyError):
    """The trading venue declined a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LedgerSyncFailed(PairLobbyError):
    """A confirmed venue operation could not be written to the ledger."""
