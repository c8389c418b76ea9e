"""Live execution provider backed by the Pear Protocol venue."""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import httpx
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from pairlobby.errors import VenueRejected
from pairlobby.execution.base import ExecutionProvider, PositionCallback, deliver, poll_until
from pairlobby.models import (
    CloseAllPositionsRequest,
    CloseAllPositionsResult,
    ClosePositionRequest,
    ClosePositionResult,
    CreatePositionRequest,
    CreatePositionResult,
    PositionCloseOutcome,
    PositionSnapshot,
)
from pairlobby.valuation import LEG_WEIGHT

logger = logging.getLogger(__name__)

DEFAULT_VENUE_URL = "https://hl-v2.pearprotocol.io"
DEFAULT_VENUE_WS_URL = "wss://hl-v2.pearprotocol.io/ws"

NOT_FOUND_MESSAGE = "Position not found or already closed"
CREATE_TIMEOUT_MESSAGE = "Order submitted but position not observed within timeout"
CLOSE_TIMEOUT_MESSAGE = "Close initiated but position still exists after timeout"


def _venue_message(response: httpx.Response, default: str) -> str:
    """Pull the venue's ``message`` out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or default
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase or default


class VenueExecutionProvider(ExecutionProvider):
    """Execution against the live venue.

    Order submission only returns an acknowledgement, so each create or
    close is followed by a bounded poll of the venue's position list.
    When the poll runs out the result is ``unconfirmed`` and the order is
    never resubmitted.
    """

    name = "live"

    def __init__(
        self,
        base_url: str = DEFAULT_VENUE_URL,
        ws_url: str = DEFAULT_VENUE_WS_URL,
        token: str = "",
        confirm_attempts: int = 30,
        confirm_interval: float = 1.0,
        close_all_attempts: int = 60,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        """Initialize the venue provider.

        Args:
            base_url: Venue REST base URL.
            ws_url: Venue stream URL.
            token: Default bearer token, used when a call passes none.
            confirm_attempts: Polls before a create or close is unconfirmed.
            confirm_interval: Seconds between polls.
            close_all_attempts: Polls for a bulk close.
            timeout: HTTP timeout for owned clients.
            client: Shared HTTP client. One is created when omitted.
            connect: WebSocket connect function.
        """
        self._base_url = base_url.rstrip("/")
        self._ws_url = ws_url
        self._token = token
        self._confirm_attempts = confirm_attempts
        self._confirm_interval = confirm_interval
        self._close_all_attempts = close_all_attempts
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._connect = connect

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential or self._token}", "Accept": "*/*"}

    async def _request(
        self, method: str, path: str, credential: str, body: Optional[dict] = None
    ) -> httpx.Response:
        """Send a request, turning transport failures into VenueRejected."""
        try:
            return await self._client.request(
                method, f"{self._base_url}{path}", headers=self._headers(credential), json=body
            )
        except httpx.HTTPError as e:
            raise VenueRejected(f"Venue request failed: {e}") from e

    # ==================== Positions ====================

    async def get_positions(self, owner: str, credential: str = "") -> list[PositionSnapshot]:
        """Get the open positions on the venue account behind ``credential``.

        Raises:
            VenueRejected: If the venue answers with a non-2xx status or a malformed body.
        """
        response = await self._request("GET", "/positions", credential)
        if response.is_error:
            raise VenueRejected(
                _venue_message(response, "Failed to get positions"), status_code=response.status_code
            )
        try:
            return [PositionSnapshot.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            raise VenueRejected(f"Malformed positions response: {e}") from e

    async def _position_ids(self, owner: str, credential: str) -> Optional[set[str]]:
        """Position IDs on the venue, or None when the poll request failed."""
        try:
            return {p.position_id for p in await self.get_positions(owner, credential)}
        except VenueRejected as e:
            logger.warning("Position poll failed: %s", e)
            return None

    # ==================== Create ====================

    async def create_position(
        self, request: CreatePositionRequest, credential: str = ""
    ) -> CreatePositionResult:
        existing = {p.position_id for p in await self.get_positions(request.player, credential)}

        response = await self._request(
            "POST",
            "/positions",
            credential,
            body={
                "slippage": request.slippage,
                "executionType": request.execution_type,
                "leverage": request.leverage,
                "usdValue": request.usd_value,
                "longAssets": [{"asset": request.long_asset, "weight": LEG_WEIGHT}],
                "shortAssets": [{"asset": request.short_asset, "weight": LEG_WEIGHT}],
            },
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        order_id = body.get("orderId") if isinstance(body, dict) else None
        if response.is_error or not order_id:
            error = _venue_message(response, "Failed to create position")
            logger.warning("Venue rejected order for %s: %s", request.player, error)
            return CreatePositionResult(success=False, status="rejected", error=error)

        logger.info("Order %s submitted; waiting for position", order_id)

        async def new_position() -> Optional[PositionSnapshot]:
            try:
                snapshots = await self.get_positions(request.player, credential)
            except VenueRejected as e:
                logger.warning("Position poll failed: %s", e)
                return None
            # first match wins; concurrent identical opens are indistinguishable
            for snapshot in snapshots:
                if snapshot.position_id not in existing and snapshot.matches(
                    request.long_asset, request.short_asset, request.leverage
                ):
                    return snapshot
            return None

        snapshot = await poll_until(new_position, self._confirm_attempts, self._confirm_interval)
        if snapshot is None:
            logger.warning("Order %s not confirmed after %d polls", order_id, self._confirm_attempts)
            return CreatePositionResult(
                success=False, status="unconfirmed", order_id=order_id, error=CREATE_TIMEOUT_MESSAGE
            )

        logger.info("Order %s filled as position %s", order_id, snapshot.position_id)
        return CreatePositionResult(
            success=True,
            status="confirmed",
            order_id=order_id,
            position_id=snapshot.position_id,
            snapshot=snapshot,
        )

    # ==================== Close ====================

    async def _submit_close(
        self, request: ClosePositionRequest, credential: str
    ) -> Optional[str]:
        """Submit a close order.

        Returns:
            None on acceptance, otherwise the venue's error message.
        """
        body = {
            "executionType": request.execution_type,
            "twapDuration": request.twap_duration,
            "twapIntervalSeconds": request.twap_interval_seconds,
            "randomizeExecution": request.randomize_execution,
            "referralCode": request.referral_code,
        }
        response = await self._request(
            "POST",
            f"/positions/{request.position_id}/close",
            credential,
            body={key: value for key, value in body.items() if value is not None},
        )
        if response.is_error:
            return _venue_message(response, "Failed to close position")
        return None

    async def close_position(
        self, request: ClosePositionRequest, credential: str = ""
    ) -> ClosePositionResult:
        positions = await self.get_positions(request.player, credential)
        current = next((p for p in positions if p.position_id == request.position_id), None)
        if current is None:
            return ClosePositionResult(
                success=False, status="rejected", not_found=True, error=NOT_FOUND_MESSAGE
            )

        realized_value = current.mark_value
        error = await self._submit_close(request, credential)
        if error is not None:
            logger.warning("Venue rejected close of %s: %s", request.position_id, error)
            return ClosePositionResult(success=False, status="rejected", error=error)

        async def gone() -> Optional[bool]:
            ids = await self._position_ids(request.player, credential)
            if ids is not None and request.position_id not in ids:
                return True
            return None

        if await poll_until(gone, self._confirm_attempts, self._confirm_interval) is None:
            logger.warning("Close of %s not confirmed", request.position_id)
            return ClosePositionResult(success=False, status="unconfirmed", error=CLOSE_TIMEOUT_MESSAGE)

        logger.info("Position %s closed on venue, realized %.2f", request.position_id, realized_value)
        return ClosePositionResult(success=True, status="confirmed", realized_value=realized_value)

    async def close_all_positions(
        self, request: CloseAllPositionsRequest, credential: str = ""
    ) -> CloseAllPositionsResult:
        """Submit every close first, then wait for all of them together."""
        positions = await self.get_positions(request.player, credential)
        if request.position_ids is not None:
            wanted = set(request.position_ids)
            present = {p.position_id for p in positions}
            for missing in wanted - present:
                logger.warning("Position %s not on venue; skipping", missing)
            positions = [p for p in positions if p.position_id in wanted]
            rejected = [
                PositionCloseOutcome(
                    position_id=position_id, success=False, status="rejected", error=NOT_FOUND_MESSAGE
                )
                for position_id in sorted(wanted - present)
            ]
        else:
            rejected = []

        submitted: dict[str, float] = {}
        for position in positions:
            try:
                error = await self._submit_close(
                    ClosePositionRequest(
                        position_id=position.position_id, execution_type=request.execution_type
                    ),
                    credential,
                )
            except VenueRejected as e:
                error = str(e)
            if error is not None:
                rejected.append(
                    PositionCloseOutcome(
                        position_id=position.position_id, success=False, status="rejected", error=error
                    )
                )
            else:
                submitted[position.position_id] = position.mark_value

        remaining: set[str] = set(submitted)
        if submitted:

            async def all_gone() -> Optional[bool]:
                nonlocal remaining
                ids = await self._position_ids(request.player, credential)
                if ids is not None:
                    remaining = set(submitted) & ids
                    if not remaining:
                        return True
                return None

            await poll_until(all_gone, self._close_all_attempts, self._confirm_interval)

        results = list(rejected)
        for position_id, realized_value in submitted.items():
            if position_id in remaining:
                results.append(
                    PositionCloseOutcome(
                        position_id=position_id,
                        success=False,
                        status="unconfirmed",
                        error=CLOSE_TIMEOUT_MESSAGE,
                    )
                )
            else:
                results.append(
                    PositionCloseOutcome(
                        position_id=position_id,
                        success=True,
                        status="confirmed",
                        realized_value=realized_value,
                    )
                )
        return CloseAllPositionsResult.from_results(results)

    # ==================== Stream ====================

    def subscribe_to_positions(
        self,
        owner: str,
        lobby_id: str,
        callback: PositionCallback,
        credential: str = "",
        on_end: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """Stream position updates over the venue WebSocket.

        The subscription ends when the venue closes the stream, at which
        point ``on_end`` is called.
        """

        async def _stream() -> None:
            try:
                async with self._connect(self._ws_url) as ws:
                    await ws.send(
                        json.dumps({"action": "subscribe", "address": owner, "channels": ["positions"]})
                    )
                    logger.info("Venue stream connected for %s in lobby %s", owner, lobby_id)
                    async for message in ws:
                        await self._handle_message(message, callback)
            except ConnectionClosed as e:
                logger.info("Venue stream closed for %s: %s", owner, e)
            except (WebSocketException, OSError) as e:
                logger.error("Venue stream error for %s: %s", owner, e)
            # Not reached on cancellation.
            if on_end is not None:
                on_end()

        task = asyncio.get_running_loop().create_task(_stream())

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe

    async def _handle_message(self, message: Any, callback: PositionCallback) -> None:
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.error("Failed to decode venue message: %s", e)
            return
        if not isinstance(data, dict) or data.get("channel") != "positions" or not data.get("data"):
            return

        payload = data["data"]
        items = payload if isinstance(payload, list) else [payload]
        try:
            snapshots = [PositionSnapshot.model_validate(item) for item in items]
        except ValidationError as e:
            logger.error("Malformed venue position update: %s", e)
            return
        try:
            await deliver(callback, snapshots)
        except Exception:
            logger.exception("Position update handler failed")
