"""Tests for the SQLite trade store and execution ledger."""

import sqlite3
from datetime import datetime, timezone

import pytest

from copyrelay.errors import CopyRelayError, ErrorKind
from copyrelay.schema import ExecutionRecord, RecordStatus, TradeStatus
from copyrelay.storage import CopyRelayStore
from tests.mocks.factories import FOLLOWER_1, FOLLOWER_2, SOURCE, make_trade


def record(activity_id: str, follower: str, status=RecordStatus.SUCCESS, **kwargs):
    return ExecutionRecord(
        trader_address=SOURCE,
        activity_id=activity_id,
        follower_address=follower,
        status=status,
        **kwargs,
    )


class TestTrades:
    def test_insert_and_read_back(self, temp_store):
        trade = make_trade("t1", usdc_size=12.5, price=0.25)
        assert temp_store.insert_trade(trade)

        stored = temp_store.get_trade("t1")
        assert stored == trade

    def test_insert_duplicate_ignored(self, temp_store):
        assert temp_store.insert_trade(make_trade("t1"))
        assert not temp_store.insert_trade(make_trade("t1", usdc_size=99))
        assert temp_store.get_trade("t1").usdc_size == 10.0

    def test_pending_filtered_and_ordered(self, temp_store):
        temp_store.insert_trade(make_trade("late", offset_seconds=20))
        temp_store.insert_trade(make_trade("early", offset_seconds=10))
        temp_store.insert_trade(make_trade("other", source="0x" + "b" * 40))
        temp_store.insert_trade(make_trade("done"))
        temp_store.set_status("done", TradeStatus.DONE)

        pending = temp_store.get_pending_trades([SOURCE.upper().replace("0X", "0x")])
        assert [t.id for t in pending] == ["early", "late"]

    def test_pending_with_no_addresses(self, temp_store):
        temp_store.insert_trade(make_trade("t1"))
        assert temp_store.get_pending_trades([]) == []

    def test_transition_is_compare_and_set(self, temp_store):
        temp_store.insert_trade(make_trade("t1"))

        assert temp_store.transition("t1", TradeStatus.PENDING, TradeStatus.PROCESSING)
        assert not temp_store.transition("t1", TradeStatus.PENDING, TradeStatus.PROCESSING)
        assert temp_store.get_trade("t1").status == TradeStatus.PROCESSING

    def test_transition_keeps_detail_when_none(self, temp_store):
        temp_store.insert_trade(make_trade("t1"))
        temp_store.set_status("t1", TradeStatus.FAILED, "boom")
        temp_store.transition("t1", TradeStatus.FAILED, TradeStatus.FAILED)
        assert temp_store.get_status_detail("t1") == "boom"

    def test_release_buffered(self, temp_store):
        for trade_id in ("t1", "t2", "t3"):
            temp_store.insert_trade(make_trade(trade_id))
        temp_store.transition("t1", TradeStatus.PENDING, TradeStatus.BUFFERED)
        temp_store.transition("t2", TradeStatus.PENDING, TradeStatus.BUFFERED)
        temp_store.set_status("t3", TradeStatus.DONE)

        assert temp_store.release_buffered() == 2
        assert temp_store.get_trade("t1").status == TradeStatus.PENDING
        assert temp_store.get_trade("t3").status == TradeStatus.DONE

    def test_unknown_trade(self, temp_store):
        assert temp_store.get_trade("missing") is None
        assert temp_store.get_status_detail("missing") is None


class TestLedger:
    def test_record_unique_per_follower(self, temp_store):
        assert temp_store.record_execution(record("t1", FOLLOWER_1))
        assert not temp_store.record_execution(record("t1", FOLLOWER_1, RecordStatus.FAILED))
        assert temp_store.record_execution(record("t1", FOLLOWER_2, RecordStatus.FAILED))

        assert temp_store.count_executions(SOURCE, "t1") == 2
        assert temp_store.executed_followers(SOURCE, "t1") == {FOLLOWER_1, FOLLOWER_2}

    def test_addresses_stored_lowercase(self, temp_store):
        temp_store.record_execution(
            ExecutionRecord(
                trader_address=SOURCE.upper().replace("0X", "0x"),
                activity_id="t1",
                follower_address=FOLLOWER_1,
                status=RecordStatus.SUCCESS,
            )
        )
        assert temp_store.count_executions(SOURCE, "t1") == 1

    def test_get_executions_round_trip(self, temp_store):
        executed_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        temp_store.record_execution(
            record("t1", FOLLOWER_1, executed_at=executed_at, filled_size=4.2, preview=True, detail="preview")
        )

        (stored,) = temp_store.get_executions(activity_id="t1")
        assert stored.executed_at == executed_at
        assert stored.filled_size == 4.2
        assert stored.preview
        assert stored.detail == "preview"
        assert stored.succeeded

    def test_filter_by_follower(self, temp_store):
        temp_store.record_execution(record("t1", FOLLOWER_1))
        temp_store.record_execution(record("t1", FOLLOWER_2))
        temp_store.record_execution(record("t2", FOLLOWER_1))

        assert len(temp_store.get_executions(follower_address=FOLLOWER_1)) == 2
        assert len(temp_store.get_executions(activity_id="t1", follower_address=FOLLOWER_2)) == 1

    def test_stats(self, temp_store):
        temp_store.insert_trade(make_trade("t1"))
        temp_store.record_execution(record("t1", FOLLOWER_1, preview=True))
        temp_store.record_execution(record("t1", FOLLOWER_2, RecordStatus.FAILED))

        stats = temp_store.get_stats()
        assert stats["trade_stats"] == {"PENDING": 1}
        assert stats["execution_stats"] == {"success": 1, "failed": 1}
        assert stats["preview_executions"] == 1


class TestSnapshotsAndSchema:
    def test_pnl_snapshot(self, temp_store):
        row_id = temp_store.save_pnl_snapshot(
            follower_address=FOLLOWER_1,
            timestamp=datetime.now(timezone.utc),
            total_value_usd=110.0,
            total_initial_usd=100.0,
            unrealized_pnl_usd=10.0,
            unrealized_pnl_pct=10.0,
            realized_pnl_usd=5.0,
            realized_pnl_pct=5.0,
            position_count=2,
        )
        assert row_id > 0
        (snapshot,) = temp_store.get_pnl_snapshots(FOLLOWER_1)
        assert snapshot["total_value_usd"] == 110.0
        assert snapshot["position_count"] == 2

    def test_reopen_existing_db(self, temp_store):
        temp_store.insert_trade(make_trade("t1"))
        reopened = CopyRelayStore(str(temp_store.db_path))
        assert reopened.get_trade("t1") is not None

    def test_schema_version_mismatch(self, temp_store):
        conn = sqlite3.connect(temp_store.db_path)
        conn.execute("UPDATE metadata SET value = '99' WHERE key = 'schema_version'")
        conn.commit()
        conn.close()

        with pytest.raises(CopyRelayError) as exc_info:
            CopyRelayStore(str(temp_store.db_path))
        assert exc_info.value.kind == ErrorKind.CONFIGURATION

    def test_sql_errors_are_database_errors(self, temp_store):
        with pytest.raises(CopyRelayError) as exc_info:
            with temp_store.get_connection() as conn:
                conn.execute("SELECT * FROM no_such_table")
        assert exc_info.value.kind == ErrorKind.DATABASE
        assert exc_info.value.retryable
