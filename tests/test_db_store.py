"""Property-based tests for the database store, ledger and position stores."""

import sqlite3
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pairlobby.db import DataStore, LedgerStore, PositionStore
from pairlobby.errors import InsufficientFunds, NotFound
from pairlobby.models import Lobby, PositionRecord, ReconciliationItem


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield DataStore(db_path)


@pytest.fixture
def ledger(temp_db: DataStore) -> LedgerStore:
    return LedgerStore(temp_db)


def _record(position_id: str = "pos-1", player: str = "0xAbC", **overrides) -> PositionRecord:
    values = dict(
        position_id=position_id,
        player=player,
        lobby_id="lobby-1",
        long_asset="BTC",
        short_asset="ETH",
        leverage=5,
        usd_value=500,
        margin_used=100,
        entry_price_long=60000,
        entry_price_short=3000,
        mark_value=100,
    )
    values.update(overrides)
    return PositionRecord(**values)


class TestDatabaseSchemaCompleteness:
    """
    *For any* fresh database, all required tables should exist.
    """

    def test_schema_completeness(self, temp_db: DataStore):
        tables = temp_db.get_tables()

        for table in DataStore.REQUIRED_TABLES:
            assert table in tables, f"Required table '{table}' is missing"

    def test_reopening_keeps_data(self, temp_db: DataStore):
        LedgerStore(temp_db).open_account("0xabc", "lobby-1", 1000)

        reopened = LedgerStore(DataStore(temp_db.db_path))

        assert reopened.get_account("0xabc", "lobby-1").balance == 1000


class TestLobbies:
    def test_save_and_get_lobby(self, temp_db: DataStore):
        start = datetime(2026, 1, 1, 12, 0)
        lobby = Lobby(
            id="lobby-1",
            name="Friday",
            buy_in=1000,
            is_demo=False,
            start_time=start,
            end_time=start + timedelta(hours=2),
        )
        temp_db.save_lobby(lobby)

        loaded = temp_db.get_lobby("lobby-1")

        assert loaded == lobby
        assert temp_db.get_lobby("missing") is None

    def test_window_longer_than_a_day_is_rejected(self):
        start = datetime(2026, 1, 1)
        with pytest.raises(ValueError):
            Lobby(id="x", name="x", buy_in=10, start_time=start, end_time=start + timedelta(hours=25))

    def test_end_before_start_is_rejected(self):
        start = datetime(2026, 1, 1)
        with pytest.raises(ValueError):
            Lobby(id="x", name="x", buy_in=10, start_time=start, end_time=start - timedelta(minutes=1))


class TestLedgerAccounts:
    def test_join_sets_balance_to_buy_in(self, ledger: LedgerStore):
        account = ledger.open_account("0xABC", "lobby-1", 1000)

        assert account.player == "0xabc"
        assert account.balance == 1000
        assert account.value_in_positions == 0
        assert account.total_value == 1000
        assert ledger.count_history("0xabc", "lobby-1") == 1

    def test_joining_twice_fails(self, ledger: LedgerStore):
        ledger.open_account("0xabc", "lobby-1", 1000)

        with pytest.raises(ValueError):
            ledger.open_account("0xABC", "lobby-1", 1000)

    def test_accounts_listed_in_join_order(self, ledger: LedgerStore):
        for player in ["0xccc", "0xaaa", "0xbbb"]:
            ledger.open_account(player, "lobby-1", 100)

        assert [a.player for a in ledger.get_accounts("lobby-1")] == ["0xccc", "0xaaa", "0xbbb"]

    def test_debit_and_credit(self, ledger: LedgerStore):
        ledger.open_account("0xabc", "lobby-1", 1000)

        assert ledger.debit("0xabc", "lobby-1", 100, value_in_positions=100) == 900
        assert ledger.credit("0xabc", "lobby-1", 100, value_in_positions=0) == 1000

        account = ledger.get_account("0xabc", "lobby-1")
        assert account.balance == 1000
        assert account.value_in_positions == 0

    def test_overdraft_is_rejected_without_mutation(self, ledger: LedgerStore):
        ledger.open_account("0xabc", "lobby-1", 900)

        with pytest.raises(InsufficientFunds) as exc_info:
            ledger.debit("0xabc", "lobby-1", 2000)

        assert exc_info.value.available == 900
        assert ledger.get_account("0xabc", "lobby-1").balance == 900
        assert ledger.count_history("0xabc", "lobby-1") == 1

    def test_missing_ledger(self, ledger: LedgerStore):
        with pytest.raises(NotFound):
            ledger.debit("0xabc", "lobby-1", 1)
        with pytest.raises(NotFound):
            ledger.credit("0xabc", "lobby-1", 1)
        with pytest.raises(NotFound):
            ledger.set_value_in_positions("0xabc", "lobby-1", 1)

    def test_set_value_in_positions_keeps_balance(self, ledger: LedgerStore):
        ledger.open_account("0xabc", "lobby-1", 1000)

        assert ledger.set_value_in_positions("0xabc", "lobby-1", 250) == 1000
        assert ledger.get_account("0xabc", "lobby-1").total_value == 1250


class TestBalanceNonNegativity:
    """
    *For any* sequence of debits and credits, the balance never drops
    below zero and rejected debits leave it unchanged.
    """

    @given(
        operations=st.lists(
            st.tuples(
                st.sampled_from(["debit", "credit"]),
                st.floats(min_value=0, max_value=2000, allow_nan=False, allow_infinity=False),
            ),
            max_size=25,
        )
    )
    @settings(max_examples=30, deadline=None)
    def test_balance_never_negative(self, operations):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = LedgerStore(DataStore(Path(tmpdir) / "test.db"))
            ledger.open_account("0xabc", "lobby-1", 1000)

            for op, amount in operations:
                before = ledger.get_account("0xabc", "lobby-1").balance
                if op == "debit":
                    try:
                        ledger.debit("0xabc", "lobby-1", amount)
                    except InsufficientFunds:
                        assert amount > before
                        assert ledger.get_account("0xabc", "lobby-1").balance == before
                else:
                    ledger.credit("0xabc", "lobby-1", amount)

                assert ledger.get_account("0xabc", "lobby-1").balance >= 0


class TestHistoryAppendOnly:
    """
    *For any* sequence of ledger mutations, each one appends exactly one
    history entry and earlier entries never change.
    """

    @given(
        amounts=st.lists(
            st.floats(min_value=0, max_value=50, allow_nan=False, allow_infinity=False),
            min_size=1,
            max_size=15,
        )
    )
    @settings(max_examples=20, deadline=None)
    def test_each_mutation_appends_one_entry(self, amounts):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = LedgerStore(DataStore(Path(tmpdir) / "test.db"))
            ledger.open_account("0xabc", "lobby-1", 1000)

            for i, amount in enumerate(amounts):
                before = ledger.get_history("0xabc", "lobby-1")
                mutation = i % 3
                if mutation == 0:
                    ledger.debit("0xabc", "lobby-1", amount)
                elif mutation == 1:
                    ledger.credit("0xabc", "lobby-1", amount)
                else:
                    ledger.set_value_in_positions("0xabc", "lobby-1", amount)
                after = ledger.get_history("0xabc", "lobby-1")

                assert len(after) == len(before) + 1
                assert after[: len(before)] == before
                assert after[-1].balance == ledger.get_account("0xabc", "lobby-1").balance

    def test_history_rows_cannot_be_rewritten(self, temp_db: DataStore):
        LedgerStore(temp_db).open_account("0xabc", "lobby-1", 1000)

        with pytest.raises(sqlite3.IntegrityError):
            with temp_db.transaction() as conn:
                conn.execute("UPDATE balance_history SET balance = 0")
        with pytest.raises(sqlite3.IntegrityError):
            with temp_db.transaction() as conn:
                conn.execute("DELETE FROM balance_history")

    def test_history_limit_returns_latest_oldest_first(self, ledger: LedgerStore):
        ledger.open_account("0xabc", "lobby-1", 1000)
        for amount in (10, 20, 30):
            ledger.debit("0xabc", "lobby-1", amount)

        entries = ledger.get_history("0xabc", "lobby-1", limit=2)

        assert [e.balance for e in entries] == [970, 940]


class TestTransactions:
    def test_rollback_discards_all_writes(self, temp_db: DataStore):
        ledger = LedgerStore(temp_db)
        positions = PositionStore(temp_db)
        ledger.open_account("0xabc", "lobby-1", 50)

        with pytest.raises(InsufficientFunds):
            with temp_db.transaction() as conn:
                positions.insert(_record(), conn=conn)
                ledger.debit("0xabc", "lobby-1", 100, conn=conn)

        assert positions.get("pos-1") is None
        assert ledger.get_account("0xabc", "lobby-1").balance == 50


class TestPositionStore:
    def test_insert_and_get(self, temp_db: DataStore):
        positions = PositionStore(temp_db)
        positions.insert(_record())

        record = positions.get("pos-1")

        assert record.player == "0xabc"
        assert record.state == "open"
        assert record.margin_used == 100

    def test_close_only_once(self, temp_db: DataStore):
        positions = PositionStore(temp_db)
        positions.insert(_record())

        assert positions.mark_closed("pos-1", 120) is True
        assert positions.mark_closed("pos-1", 999) is False

        record = positions.get("pos-1")
        assert record.state == "closed"
        assert record.realized_value == 120
        assert record.closed_at is not None

    def test_marks_sum_over_open_positions(self, temp_db: DataStore):
        positions = PositionStore(temp_db)
        positions.insert(_record("a"))
        positions.insert(_record("b"))
        positions.insert(_record("c", player="0xother"))

        assert positions.update_marks({"a": 110.0, "b": 95.0, "c": 1.0}) == 3
        assert positions.sum_open_marks("0xabc", "lobby-1") == pytest.approx(205.0)

        positions.mark_closed("a", 110.0)
        assert positions.update_marks({"a": 500.0}) == 0
        assert positions.sum_open_marks("0xabc", "lobby-1") == pytest.approx(95.0)
        assert [p.position_id for p in positions.list_open("lobby-1", "0xABC")] == ["b"]


class TestReconciliation:
    def test_add_list_resolve(self, temp_db: DataStore):
        item_id = temp_db.add_reconciliation(
            ReconciliationItem(
                kind="open_unledgered",
                player="0xABC",
                lobby_id="lobby-1",
                position_id="pos-1",
                amount=100,
                detail="disk full",
            )
        )

        pending = temp_db.get_reconciliation("lobby-1")
        assert [i.id for i in pending] == [item_id]
        assert pending[0].player == "0xabc"

        assert temp_db.resolve_reconciliation(item_id) is True
        assert temp_db.resolve_reconciliation(item_id) is False
        assert temp_db.get_reconciliation("lobby-1") == []
        assert len(temp_db.get_reconciliation("lobby-1", include_resolved=True)) == 1


class TestSimulatedBook:
    def test_address_stored_lower_case(self, temp_db: DataStore):
        temp_db.save_simulated_position(
            {
                "position_id": "sim_1_abc",
                "address": "0xABC",
                "lobby_id": "lobby-1",
                "long_asset": "BTC",
                "short_asset": "ETH",
                "leverage": 5,
                "usd_value": 500,
                "entry_price_long": 60000,
                "entry_price_short": 3000,
                "created_at": datetime.now().isoformat(),
            }
        )

        assert [r["position_id"] for r in temp_db.get_simulated_positions("0xabc")] == ["sim_1_abc"]
        assert temp_db.delete_simulated_position("sim_1_abc") is True
        assert temp_db.delete_simulated_position("sim_1_abc") is False
