"""Tests for the trade aggregation buffer."""

import pytest

from copyrelay.aggregator import TradeAggregator
from copyrelay.schema import ExecutionRecord, RecordStatus, Side, TradeStatus
from tests.mocks.factories import FOLLOWER_1, SOURCE, make_trade


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator(temp_store, clock):
    return TradeAggregator(store=temp_store, clock=clock)


def test_eligibility():
    assert TradeAggregator.is_eligible(make_trade("t1", usdc_size=0.5), 1.0)
    assert not TradeAggregator.is_eligible(make_trade("t2", usdc_size=1.0), 1.0)
    assert not TradeAggregator.is_eligible(
        make_trade("t3", usdc_size=0.5, side=Side.SELL), 1.0
    )


def test_weighted_average_price(aggregator):
    """Notional-weighted average: (0.2*0.50 + 0.3*0.52 + 0.4*0.55) / 0.9"""
    aggregator.add(make_trade("t1", usdc_size=0.2, price=0.50))
    aggregator.add(make_trade("t2", usdc_size=0.3, price=0.52))
    group = aggregator.add(make_trade("t3", usdc_size=0.4, price=0.55))

    assert aggregator.size() == 1
    assert group.total_usdc == pytest.approx(0.9, abs=1e-9)
    assert group.average_price == pytest.approx(0.5289, abs=1e-4)
    assert group.average_price == pytest.approx((0.1 + 0.156 + 0.22) / 0.9, abs=1e-6)
    assert group.trade_ids == ["t1", "t2", "t3"]


def test_groups_split_by_key(aggregator):
    aggregator.add(make_trade("t1", usdc_size=0.2))
    aggregator.add(make_trade("t2", usdc_size=0.2, asset="token-2"))
    aggregator.add(make_trade("t3", usdc_size=0.2, condition_id="cond-2"))
    aggregator.add(make_trade("t4", usdc_size=0.2, source="0x" + "b" * 40))

    assert aggregator.size() == 4
    assert sorted(aggregator.pending_trade_ids()) == ["t1", "t2", "t3", "t4"]


def test_window_not_elapsed(aggregator, clock):
    aggregator.add(make_trade("t1", usdc_size=0.6))
    aggregator.add(make_trade("t2", usdc_size=0.6))

    clock.now = 299
    assert aggregator.collect_ready(300, 1.0) == []
    assert aggregator.size() == 1


def test_window_measured_from_first_trade(aggregator, clock):
    aggregator.add(make_trade("t1", usdc_size=0.6))
    clock.now = 200
    aggregator.add(make_trade("t2", usdc_size=0.6))

    clock.now = 300
    ready = aggregator.collect_ready(300, 1.0)

    assert len(ready) == 1
    assert ready[0].total_usdc == pytest.approx(1.2)
    assert ready[0].first_seen == 0
    assert ready[0].last_seen == 200
    assert aggregator.size() == 0


def test_expired_below_minimum_skipped(temp_store, aggregator, clock):
    for trade in (make_trade("t1", usdc_size=0.2), make_trade("t2", usdc_size=0.3)):
        temp_store.insert_trade(trade)
        temp_store.transition(trade.id, TradeStatus.PENDING, TradeStatus.BUFFERED)
        aggregator.add(trade)

    clock.now = 301
    ready = aggregator.collect_ready(300, 1.0)

    assert ready == []
    assert aggregator.size() == 0
    assert aggregator.skipped_trades == 2
    assert temp_store.get_trade("t1").status == TradeStatus.SKIPPED
    assert temp_store.get_trade("t2").status == TradeStatus.SKIPPED

    # Never offered again
    clock.now = 1000
    assert aggregator.collect_ready(300, 1.0) == []
    assert temp_store.get_pending_trades([make_trade("x").source_address]) == []


def test_skip_continues_after_store_error(clock):
    class BrokenStore:
        def __init__(self):
            self.calls = []

        def set_status(self, trade_id, status, detail=None):
            self.calls.append(trade_id)
            if trade_id == "t1":
                raise RuntimeError("disk full")

    store = BrokenStore()
    aggregator = TradeAggregator(store=store, clock=clock)
    aggregator.add(make_trade("t1", usdc_size=0.2))
    aggregator.add(make_trade("t2", usdc_size=0.2))

    clock.now = 301
    assert aggregator.collect_ready(300, 1.0) == []
    assert store.calls == ["t1", "t2"]


def test_below_minimum_with_copies_returned(temp_store, aggregator, clock):
    trade = make_trade("t1", usdc_size=0.4)
    temp_store.insert_trade(trade)
    temp_store.transition(trade.id, TradeStatus.PENDING, TradeStatus.BUFFERED)
    temp_store.record_execution(
        ExecutionRecord(
            trader_address=SOURCE,
            activity_id="t1",
            follower_address=FOLLOWER_1,
            status=RecordStatus.SUCCESS,
        )
    )
    aggregator.add(trade)

    clock.now = 301
    ready = aggregator.collect_ready(300, 1.0)

    assert [g.trade_ids for g in ready] == [["t1"]]
    assert aggregator.skipped_trades == 0
    assert temp_store.get_trade("t1").status == TradeStatus.BUFFERED


def test_subset_keeps_key_and_reprices(aggregator):
    group = aggregator.add(make_trade("t1", usdc_size=0.4, price=0.5))
    aggregator.add(make_trade("t2", usdc_size=0.6, price=0.6))

    sub = group.subset([group.trades[1]])

    assert sub.key == group.key
    assert sub.trade_ids == ["t2"]
    assert sub.total_usdc == pytest.approx(0.6)
    assert sub.average_price == pytest.approx(0.6)
    assert sub.first_seen == group.first_seen
