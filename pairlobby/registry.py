"""Registry of running valuation syncs."""

import logging
from typing import Callable

from pairlobby.db.store import normalize_address

logger = logging.getLogger(__name__)

SyncKey = tuple[str, str]


class SubscriptionRegistry:
    """Tracks active valuation syncs keyed by ``(player, lobby_id)``.

    Starting a key twice keeps the first subscription; stopping an
    unknown key does nothing.
    """

    def __init__(self) -> None:
        self._active: dict[SyncKey, Callable[[], None]] = {}

    @staticmethod
    def _key(player: str, lobby_id: str) -> SyncKey:
        return normalize_address(player), lobby_id

    def start(self, player: str, lobby_id: str, factory: Callable[[], Callable[[], None]]) -> bool:
        """Register a sync unless one is already running.

        Args:
            factory: Starts the subscription and returns its unsubscribe function.
                Only called when the key is not yet registered.

        Returns:
            True if a new sync was started.
        """
        key = self._key(player, lobby_id)
        if key in self._active:
            logger.debug("Valuation sync already active for %s in %s", *key)
            return False
        self._active[key] = factory()
        return True

    def stop(self, player: str, lobby_id: str) -> bool:
        """Stop and forget a sync.

        Returns:
            True if a sync was running.
        """
        unsubscribe = self._active.pop(self._key(player, lobby_id), None)
        if unsubscribe is None:
            return False
        unsubscribe()
        return True

    def discard(self, player: str, lobby_id: str) -> bool:
        """Forget a sync whose stream ended on its own.

        The unsubscribe function is not called.
        """
        key = self._key(player, lobby_id)
        if self._active.pop(key, None) is None:
            return False
        logger.info("Valuation sync ended for %s in %s", *key)
        return True

    def is_active(self, player: str, lobby_id: str | None = None) -> bool:
        """Check for a running sync, in one lobby or in any."""
        if lobby_id is not None:
            return self._key(player, lobby_id) in self._active
        player = normalize_address(player)
        return any(key[0] == player for key in self._active)

    def active_keys(self) -> list[SyncKey]:
        return list(self._active)

    def stop_all(self) -> int:
        """Stop every sync.

        Returns:
            Number of syncs stopped.
        """
        keys = list(self._active)
        for player, lobby_id in keys:
            self.stop(player, lobby_id)
        return len(keys)
