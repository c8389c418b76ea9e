"""Base execution provider interface for pairlobby."""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar, Union

from pairlobby.models import (
    CloseAllPositionsRequest,
    CloseAllPositionsResult,
    ClosePositionRequest,
    ClosePositionResult,
    CreatePositionRequest,
    CreatePositionResult,
    PositionSnapshot,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PositionCallback = Callable[[list[PositionSnapshot]], Union[None, Awaitable[None]]]


async def poll_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    attempts: int,
    interval: float,
) -> Optional[T]:
    """Wait for a state to appear.

    Sleeps ``interval`` seconds before each of at most ``attempts`` probes.
    Nothing is resubmitted; the probe only observes.

    Args:
        probe: Returns a value once the awaited state is observed, else None.
        attempts: Maximum number of probes.
        interval: Seconds between probes.

    Returns:
        The first non-None probe result, or None when every attempt missed.
    """
    for attempt in range(attempts):
        await asyncio.sleep(interval)
        result = await probe()
        if result is not None:
            logger.debug("Poll satisfied after %d attempt(s)", attempt + 1)
            return result
    return None


async def deliver(callback: PositionCallback, snapshots: list[PositionSnapshot]) -> None:
    """Invoke a plain or coroutine callback."""
    result = callback(snapshots)
    if inspect.isawaitable(result):
        await result


class ExecutionProvider(ABC):
    """Abstract base class for execution providers.

    The live venue adapter and the paper simulator both implement this
    interface, and callers treat them the same. A provider only executes
    and reports; it never touches the lobby ledger.

    ``credential`` is the venue bearer token; providers that do not need
    one ignore it.
    """

    #: Short name used in logs and CLI output
    name: str = "provider"

    @abstractmethod
    async def get_positions(self, owner: str, credential: str = "") -> list[PositionSnapshot]:
        """Get current open positions with live valuation.

        Args:
            owner: Owner address.
            credential: Venue bearer token.

        Returns:
            Snapshots of every open position the provider holds for the owner.

        Raises:
            VenueRejected: If the provider refuses the request.
        """
        pass

    @abstractmethod
    async def create_position(
        self, request: CreatePositionRequest, credential: str = ""
    ) -> CreatePositionResult:
        """Submit a paired long/short position.

        Returns:
            Result whose ``status`` is ``confirmed`` once the position is
            observed, ``unconfirmed`` if the order may still be in flight,
            or ``rejected`` if the venue declined it.

        Raises:
            PriceUnavailable: If the provider needs a price it cannot get.
        """
        pass

    @abstractmethod
    async def close_position(
        self, request: ClosePositionRequest, credential: str = ""
    ) -> ClosePositionResult:
        """Submit closure of one position.

        Returns:
            Result carrying the realized value when confirmed, and
            ``not_found`` when the provider has no such position.
        """
        pass

    @abstractmethod
    async def close_all_positions(
        self, request: CloseAllPositionsRequest, credential: str = ""
    ) -> CloseAllPositionsResult:
        """Close every position an owner holds, reporting per-position results."""
        pass

    @abstractmethod
    def subscribe_to_positions(
        self,
        owner: str,
        lobby_id: str,
        callback: PositionCallback,
        credential: str = "",
        on_end: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """Stream the owner's position valuations to ``callback``.

        Must be called from a running event loop.

        Args:
            on_end: Called once if the stream ends without being unsubscribed.

        Returns:
            Unsubscribe function; calling it more than once is harmless.
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
