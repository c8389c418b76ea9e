"""Property-based tests for leaderboard ranking and the sync registry."""

from hypothesis import given, settings
from hypothesis import strategies as st

from pairlobby.leaderboard import rank_accounts
from pairlobby.models import LedgerAccount
from pairlobby.registry import SubscriptionRegistry

amounts = st.floats(min_value=0, max_value=100_000, allow_nan=False, allow_infinity=False)


@st.composite
def account_lists(draw):
    pairs = draw(st.lists(st.tuples(amounts, amounts), max_size=20))
    return [
        LedgerAccount(player=f"0x{i:040x}", lobby_id="lobby-1", balance=balance, value_in_positions=value)
        for i, (balance, value) in enumerate(pairs)
    ]


class TestRanking:
    """
    *For any* set of ledgers, standings are ordered by total value with
    1-based consecutive ranks and P&L measured against the buy-in.
    """

    @given(accounts=account_lists(), buy_in=st.floats(min_value=1, max_value=10_000))
    @settings(max_examples=100)
    def test_ordering_and_pnl(self, accounts, buy_in):
        standings = rank_accounts(accounts, buy_in)

        assert [s.rank for s in standings] == list(range(1, len(accounts) + 1))
        assert sorted(s.player for s in standings) == sorted(a.player for a in accounts)
        for earlier, later in zip(standings, standings[1:]):
            assert earlier.total_value >= later.total_value
        for standing in standings:
            assert standing.total_value == standing.balance + standing.value_in_positions
            assert standing.pnl == standing.total_value - buy_in

    def test_ties_keep_join_order(self):
        accounts = [
            LedgerAccount(player="0xfirst", lobby_id="l", balance=500, value_in_positions=500),
            LedgerAccount(player="0xsecond", lobby_id="l", balance=1000),
            LedgerAccount(player="0xthird", lobby_id="l", balance=1200),
        ]

        standings = rank_accounts(accounts, 1000)

        assert [s.player for s in standings] == ["0xthird", "0xfirst", "0xsecond"]
        assert [s.pnl for s in standings] == [200, 0, 0]

    def test_empty_lobby(self):
        assert rank_accounts([], 1000) == []


class TestRegistry:
    def test_start_is_idempotent_per_key(self):
        registry = SubscriptionRegistry()
        started = []

        def factory():
            started.append(1)
            return lambda: None

        assert registry.start("0xABC", "lobby-1", factory) is True
        assert registry.start("0xabc", "lobby-1", factory) is False
        assert registry.start("0xabc", "lobby-2", factory) is True

        assert len(started) == 2
        assert sorted(registry.active_keys()) == [("0xabc", "lobby-1"), ("0xabc", "lobby-2")]

    def test_stop_calls_unsubscribe_once(self):
        registry = SubscriptionRegistry()
        stopped = []
        registry.start("0xabc", "lobby-1", lambda: lambda: stopped.append(1))

        assert registry.stop("0xabc", "lobby-1") is True
        assert registry.stop("0xabc", "lobby-1") is False
        assert stopped == [1]
        assert registry.is_active("0xabc") is False

    def test_stop_all(self):
        registry = SubscriptionRegistry()
        stopped = []
        for lobby_id in ("a", "b", "c"):
            registry.start("0xabc", lobby_id, lambda: lambda: stopped.append(1))

        assert registry.is_active("0xABC", "b") is True
        assert registry.stop_all() == 3
        assert stopped == [1, 1, 1]
        assert registry.active_keys() == []

    def test_discard_forgets_without_unsubscribing(self):
        registry = SubscriptionRegistry()
        stopped = []
        registry.start("0xabc", "lobby-1", lambda: lambda: stopped.append(1))

        assert registry.discard("0xABC", "lobby-1") is True
        assert registry.discard("0xabc", "lobby-1") is False
        assert stopped == []
        assert registry.start("0xabc", "lobby-1", lambda: lambda: None) is True
