"""Tests for the paper and live execution providers."""

import asyncio
import json
import re
import tempfile
from pathlib import Path
from typing import Optional

import httpx
import pytest

from pairlobby.db import DataStore
from pairlobby.errors import PriceUnavailable, VenueRejected
from pairlobby.execution import PaperExecutionProvider, VenueExecutionProvider, poll_until
from pairlobby.models import (
    CloseAllPositionsRequest,
    ClosePositionRequest,
    CreatePositionRequest,
    PositionSnapshot,
)

VENUE_URL = "https://venue.test"


class FakeOracle:
    """Price oracle stand-in with settable prices."""

    def __init__(self, prices: dict[str, float]):
        self.prices = dict(prices)
        self.requests: list[list[str]] = []

    async def get_price(self, asset: str) -> float:
        self.requests.append([asset])
        if asset not in self.prices:
            raise PriceUnavailable(asset)
        return self.prices[asset]

    async def get_prices(self, assets: list[str]) -> dict[str, float]:
        self.requests.append(list(assets))
        return {a: self.prices[a] for a in assets if a in self.prices}


@pytest.fixture
def temp_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield DataStore(Path(tmpdir) / "test.db")


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({"BTC": 60000.0, "ETH": 3000.0, "SOL": 150.0})


@pytest.fixture
def paper(temp_db: DataStore, oracle: FakeOracle) -> PaperExecutionProvider:
    return PaperExecutionProvider(temp_db, oracle, poll_interval=0.01)


def _create_request(**overrides) -> CreatePositionRequest:
    values = dict(
        player="0xABC", lobby_id="lobby-1", long_asset="BTC", short_asset="ETH", leverage=5, usd_value=500
    )
    values.update(overrides)
    return CreatePositionRequest(**values)


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_first_hit(self):
        calls = []

        async def probe():
            calls.append(1)
            return "done" if len(calls) == 3 else None

        assert await poll_until(probe, attempts=5, interval=0) == "done"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_bounded_attempts(self):
        calls = []

        async def probe():
            calls.append(1)
            return None

        assert await poll_until(probe, attempts=4, interval=0) is None
        assert len(calls) == 4


class TestPaperProvider:
    @pytest.mark.asyncio
    async def test_create_fills_at_current_prices(self, paper: PaperExecutionProvider, temp_db: DataStore):
        result = await paper.create_position(_create_request())

        assert result.success is True
        assert result.status == "confirmed"
        assert re.fullmatch(r"sim_\d+_[a-z0-9]{7}", result.position_id)
        assert result.order_id.startswith("sim_order_")

        row = temp_db.get_simulated_position(result.position_id)
        assert row["address"] == "0xabc"
        assert row["entry_price_long"] == 60000.0
        assert row["entry_price_short"] == 3000.0

        snapshot = result.snapshot
        assert snapshot.execution_flag == "SIMULATED"
        assert snapshot.margin_used == pytest.approx(100.0)
        assert snapshot.position_value == pytest.approx(100.0)
        assert snapshot.unrealized_pnl == pytest.approx(0.0)
        assert snapshot.short_assets[0].actual_size < 0
        assert snapshot.long_assets[0].initial_weight == 0.5

    @pytest.mark.asyncio
    async def test_create_without_price_fails(self, paper: PaperExecutionProvider):
        with pytest.raises(PriceUnavailable):
            await paper.create_position(_create_request(short_asset="NOPE"))

    @pytest.mark.asyncio
    async def test_positions_are_marked_to_market(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        created = await paper.create_position(_create_request())
        oracle.prices["BTC"] = 66000.0

        [snapshot] = await paper.get_positions("0xabc")

        assert snapshot.position_id == created.position_id
        assert snapshot.unrealized_pnl == pytest.approx(125.0)
        assert snapshot.mark_value == pytest.approx(225.0)
        assert snapshot.mark_ratio == pytest.approx(22.0)
        assert snapshot.entry_ratio == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_positions_without_prices_are_skipped(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        await paper.create_position(_create_request())
        await paper.create_position(_create_request(long_asset="SOL"))
        del oracle.prices["SOL"]

        snapshots = await paper.get_positions("0xabc")

        assert [s.long_assets[0].coin for s in snapshots] == ["BTC"]

    @pytest.mark.asyncio
    async def test_close_realizes_value_once(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        created = await paper.create_position(_create_request())
        oracle.prices["ETH"] = 2700.0

        first = await paper.close_position(ClosePositionRequest(position_id=created.position_id))
        second = await paper.close_position(ClosePositionRequest(position_id=created.position_id))

        assert first.success is True
        assert first.realized_value == pytest.approx(100.0 + 125.0)
        assert second.success is False
        assert second.not_found is True
        assert await paper.get_positions("0xabc") == []

    @pytest.mark.asyncio
    async def test_close_prices_both_legs_in_one_request(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        created = await paper.create_position(_create_request())
        oracle.requests.clear()

        await paper.close_position(ClosePositionRequest(position_id=created.position_id))

        assert oracle.requests == [["BTC", "ETH"]]

    @pytest.mark.asyncio
    async def test_close_without_price_keeps_position(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        created = await paper.create_position(_create_request())
        del oracle.prices["ETH"]

        with pytest.raises(PriceUnavailable, match="ETH"):
            await paper.close_position(ClosePositionRequest(position_id=created.position_id))

        oracle.prices["ETH"] = 3000.0
        assert [s.position_id for s in await paper.get_positions("0xabc")] == [created.position_id]

    @pytest.mark.asyncio
    async def test_close_all_reports_per_position(self, paper: PaperExecutionProvider, oracle: FakeOracle):
        first = await paper.create_position(_create_request())
        second = await paper.create_position(_create_request(long_asset="SOL"))
        del oracle.prices["SOL"]

        result = await paper.close_all_positions(CloseAllPositionsRequest(player="0xabc", lobby_id="lobby-1"))

        assert result.closed_count == 1
        assert result.failed_count == 1
        assert result.success is False
        assert result.error == "1 positions failed to close"
        outcomes = {r.position_id: r for r in result.results}
        assert outcomes[first.position_id].success is True
        assert outcomes[second.position_id].success is False

    @pytest.mark.asyncio
    async def test_close_all_respects_position_filter(self, paper: PaperExecutionProvider):
        keep = await paper.create_position(_create_request())
        close = await paper.create_position(_create_request(long_asset="SOL"))

        result = await paper.close_all_positions(
            CloseAllPositionsRequest(player="0xabc", lobby_id="lobby-1", position_ids=[close.position_id])
        )

        assert [r.position_id for r in result.results] == [close.position_id]
        assert [s.position_id for s in await paper.get_positions("0xabc")] == [keep.position_id]

    @pytest.mark.asyncio
    async def test_subscription_streams_until_unsubscribed(self, paper: PaperExecutionProvider):
        await paper.create_position(_create_request())
        updates: list[list[PositionSnapshot]] = []

        unsubscribe = paper.subscribe_to_positions("0xabc", "lobby-1", updates.append)
        for _ in range(100):
            if updates:
                break
            await asyncio.sleep(0.01)
        unsubscribe()
        unsubscribe()

        assert len(updates[0]) == 1


def _venue_position(position_id: str, long_coin="BTC", short_coin="ETH", leverage=5.0, value=100.0, pnl=0.0) -> dict:
    return {
        "positionId": position_id,
        "address": "0xabc",
        "pearExecutionFlag": "MARKET",
        "entryRatio": 20.0,
        "markRatio": 20.0,
        "positionValue": value,
        "marginUsed": value,
        "unrealizedPnl": pnl,
        "longAssets": [{"coin": long_coin, "entryPrice": 60000, "actualSize": 0.004, "leverage": leverage}],
        "shortAssets": [{"coin": short_coin, "entryPrice": 3000, "actualSize": -0.08, "leverage": leverage}],
    }


class FakeVenue:
    """In-memory venue that fills or closes orders after a number of polls."""

    def __init__(self, fill_after: int = 1, close_after: int = 1):
        self.positions: list[dict] = []
        self.fill_after = fill_after
        self.close_after = close_after
        self.pending_fill: Optional[dict] = None
        self.pending_closes: dict[str, int] = {}
        self.polls_since_order = 0
        self.reject_create: Optional[str] = None
        self.reject_close: set[str] = set()
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path == "/positions":
            self._advance()
            return httpx.Response(200, json=list(self.positions))
        if request.method == "POST" and path == "/positions":
            if self.reject_create:
                return httpx.Response(400, json={"message": self.reject_create})
            body = json.loads(request.content)
            self.pending_fill = _venue_position(
                f"venue-{len(self.requests)}",
                long_coin=body["longAssets"][0]["asset"],
                short_coin=body["shortAssets"][0]["asset"],
                leverage=body["leverage"],
                value=body["usdValue"] / body["leverage"],
            )
            self.polls_since_order = 0
            return httpx.Response(200, json={"orderId": f"order-{len(self.requests)}"})
        match = re.fullmatch(r"/positions/(.+)/close", path)
        if request.method == "POST" and match:
            position_id = match.group(1)
            if position_id in self.reject_close:
                return httpx.Response(422, json={"message": "Close rejected"})
            self.pending_closes[position_id] = 0
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404, json={"message": "no route"})

    def _advance(self) -> None:
        if self.pending_fill is not None:
            self.polls_since_order += 1
            if self.fill_after and self.polls_since_order > self.fill_after:
                self.positions.append(self.pending_fill)
                self.pending_fill = None
        for position_id in list(self.pending_closes):
            self.pending_closes[position_id] += 1
            if self.close_after and self.pending_closes[position_id] > self.close_after:
                self.positions = [p for p in self.positions if p["positionId"] != position_id]
                del self.pending_closes[position_id]


def _venue_provider(venue: FakeVenue, attempts: int = 5) -> VenueExecutionProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(venue.handler))
    return VenueExecutionProvider(
        base_url=VENUE_URL,
        token="secret",
        confirm_attempts=attempts,
        confirm_interval=0,
        close_all_attempts=attempts,
        client=client,
    )


class TestVenueProvider:
    @pytest.mark.asyncio
    async def test_create_waits_for_new_matching_position(self):
        venue = FakeVenue(fill_after=2)
        venue.positions.append(_venue_position("old"))
        provider = _venue_provider(venue)

        result = await provider.create_position(_create_request())

        assert result.status == "confirmed"
        assert result.position_id != "old"
        assert result.snapshot.long_assets[0].coin == "BTC"
        assert result.snapshot.execution_flag == "MARKET"

        post = next(r for r in venue.requests if r.method == "POST")
        assert post.headers["Authorization"] == "Bearer secret"
        body = json.loads(post.content)
        assert body["longAssets"] == [{"asset": "BTC", "weight": 0.5}]
        assert body["shortAssets"] == [{"asset": "ETH", "weight": 0.5}]
        assert body["slippage"] == 0.01
        assert body["executionType"] == "MARKET"

    @pytest.mark.asyncio
    async def test_create_times_out_as_unconfirmed(self):
        venue = FakeVenue(fill_after=0)
        provider = _venue_provider(venue, attempts=3)

        result = await provider.create_position(_create_request())

        assert result.success is False
        assert result.status == "unconfirmed"
        assert result.order_id is not None
        # polling never resubmits the order
        assert sum(1 for r in venue.requests if r.method == "POST") == 1

    @pytest.mark.asyncio
    async def test_create_rejection_passes_message_through(self):
        venue = FakeVenue()
        venue.reject_create = "Insufficient margin on venue"
        provider = _venue_provider(venue)

        result = await provider.create_position(_create_request())

        assert result.status == "rejected"
        assert result.error == "Insufficient margin on venue"

    @pytest.mark.asyncio
    async def test_close_confirms_when_position_disappears(self):
        venue = FakeVenue(close_after=2)
        venue.positions.append(_venue_position("p1", value=100, pnl=25))
        provider = _venue_provider(venue)

        result = await provider.close_position(
            ClosePositionRequest(position_id="p1", execution_type="TWAP", twap_duration=60)
        )

        assert result.status == "confirmed"
        assert result.realized_value == pytest.approx(125.0)
        close = next(r for r in venue.requests if r.url.path.endswith("/close"))
        assert json.loads(close.content) == {"executionType": "TWAP", "twapDuration": 60}

    @pytest.mark.asyncio
    async def test_close_unknown_position(self):
        provider = _venue_provider(FakeVenue())

        result = await provider.close_position(ClosePositionRequest(position_id="missing"))

        assert result.not_found is True
        assert result.error == "Position not found or already closed"

    @pytest.mark.asyncio
    async def test_close_timeout_is_unconfirmed(self):
        venue = FakeVenue(close_after=0)
        venue.positions.append(_venue_position("p1"))
        provider = _venue_provider(venue, attempts=2)

        result = await provider.close_position(ClosePositionRequest(position_id="p1"))

        assert result.status == "unconfirmed"
        assert result.success is False

    @pytest.mark.asyncio
    async def test_close_all_mixes_outcomes(self):
        venue = FakeVenue(close_after=1)
        for position_id in ("a", "b", "c"):
            venue.positions.append(_venue_position(position_id, value=100, pnl=10))
        venue.reject_close = {"b"}
        provider = _venue_provider(venue)

        result = await provider.close_all_positions(
            CloseAllPositionsRequest(player="0xabc", lobby_id="lobby-1", position_ids=["a", "b", "c"])
        )

        assert result.closed_count == 2
        assert result.failed_count == 1
        assert result.total_realized_value == pytest.approx(220.0)
        failed = next(r for r in result.results if not r.success)
        assert failed.position_id == "b"
        assert failed.error == "Close rejected"

    @pytest.mark.asyncio
    async def test_get_positions_error_raises_venue_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Invalid token"})

        provider = VenueExecutionProvider(
            base_url=VENUE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )

        with pytest.raises(VenueRejected, match="Invalid token"):
            await provider.get_positions("0xabc")


class FakeStream:
    """Async context manager yielding canned WebSocket messages."""

    def __init__(self, messages: list[str]):
        self.messages = messages
        self.sent: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


class TestVenueStream:
    @pytest.mark.asyncio
    async def test_stream_delivers_position_updates(self):
        stream = FakeStream(
            [
                json.dumps({"channel": "trades", "data": []}),
                "not json",
                json.dumps({"channel": "positions", "data": _venue_position("p1", pnl=5)}),
                json.dumps({"channel": "positions", "data": [_venue_position("p1"), _venue_position("p2")]}),
            ]
        )
        provider = VenueExecutionProvider(base_url=VENUE_URL, connect=lambda url: stream)
        updates: list[list[PositionSnapshot]] = []

        unsubscribe = provider.subscribe_to_positions("0xabc", "lobby-1", updates.append)
        for _ in range(100):
            if len(updates) == 2:
                break
            await asyncio.sleep(0.01)
        unsubscribe()
        await provider.aclose()

        assert json.loads(stream.sent[0]) == {
            "action": "subscribe",
            "address": "0xabc",
            "channels": ["positions"],
        }
        assert [len(u) for u in updates] == [1, 2]
        assert updates[0][0].mark_value == pytest.approx(105.0)

    @pytest.mark.asyncio
    async def test_closed_stream_calls_on_end(self):
        provider = VenueExecutionProvider(base_url=VENUE_URL, connect=lambda url: FakeStream([]))
        ended: list[int] = []

        provider.subscribe_to_positions("0xabc", "lobby-1", lambda s: None, on_end=lambda: ended.append(1))
        for _ in range(100):
            if ended:
                break
            await asyncio.sleep(0.01)
        await provider.aclose()

        assert ended == [1]

    @pytest.mark.asyncio
    async def test_unsubscribe_skips_on_end(self):
        provider = VenueExecutionProvider(base_url=VENUE_URL, connect=lambda url: FakeStream([]))
        ended: list[int] = []

        unsubscribe = provider.subscribe_to_positions(
            "0xabc", "lobby-1", lambda s: None, on_end=lambda: ended.append(1)
        )
        unsubscribe()
        await asyncio.sleep(0.05)
        await provider.aclose()

        assert ended == []
