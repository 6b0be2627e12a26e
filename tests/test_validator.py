"""Tests for pre-trade validation."""

import asyncio

import pytest

from copyrelay.breaker import BreakerRegistry, BreakerState
from copyrelay.schema import Side
from copyrelay.validator import OrderValidator
from tests.mocks.factories import FOLLOWER_1, SOURCE, make_trade
from tests.mocks.mock_gateway import MockOrderGateway, MockPositionsClient, make_position


def run_async(coro):
    """Run async coroutine in sync test."""
    return asyncio.run(coro)


@pytest.fixture
def positions():
    return MockPositionsClient(
        {
            SOURCE: [
                make_position("cond-1", size=100, current_value=60.0),
                make_position("cond-2", size=10, current_value=40.0),
            ],
            FOLLOWER_1: [make_position("cond-1", size=20, current_value=12.0)],
        }
    )


@pytest.fixture
def gateway():
    return MockOrderGateway(balances={FOLLOWER_1: 100.0})


@pytest.fixture
def breakers():
    return BreakerRegistry()


@pytest.fixture
def validator(positions, gateway, breakers):
    return OrderValidator(positions, gateway, breakers)


def test_approves_affordable_buy(validator, follower):
    result = run_async(validator.validate(make_trade("t1", usdc_size=50), follower))

    assert result.approved
    assert result.reason is None
    assert result.follower_balance == 100.0
    assert result.source_balance == pytest.approx(100.0)
    assert result.follower_position.size == 20
    assert result.source_position.size == 100


def test_rejects_buy_over_balance(validator, gateway, follower):
    gateway.balances[FOLLOWER_1] = 10.0
    result = run_async(validator.validate(make_trade("t1", usdc_size=50), follower))

    assert not result.approved
    assert "Insufficient balance" in result.reason
    assert "$10.00" in result.reason
    assert "$50.00" in result.reason


def test_sell_not_balance_checked(validator, gateway, follower):
    gateway.balances[FOLLOWER_1] = 0.0
    trade = make_trade("t1", usdc_size=50, side=Side.SELL)
    result = run_async(validator.validate(trade, follower))
    assert result.approved


def test_missing_positions_are_none(validator, follower):
    trade = make_trade("t1", usdc_size=5, condition_id="cond-9")
    result = run_async(validator.validate(trade, follower))
    assert result.approved
    assert result.follower_position is None
    assert result.source_position is None


def test_malformed_positions_rejected(validator, positions, follower):
    positions.positions[FOLLOWER_1] = {"error": "bad"}
    result = run_async(validator.validate(make_trade("t1"), follower))

    assert not result.approved
    assert "Invalid positions data" in result.reason


def test_api_fault_becomes_rejection(validator, positions, follower):
    positions.error = ConnectionError("timeout")
    result = run_async(validator.validate(make_trade("t1"), follower))

    assert not result.approved
    assert result.reason.startswith("Validation failed")


def test_balance_fault_becomes_rejection(validator, gateway, follower):
    gateway.balance_error = RuntimeError("rpc down")
    result = run_async(validator.validate(make_trade("t1"), follower))

    assert not result.approved
    assert "rpc down" in result.reason


def test_positions_breaker_opens_and_fails_fast(validator, positions, breakers, follower):
    positions.error = ConnectionError("timeout")
    for _ in range(3):
        run_async(validator.validate(make_trade("t1"), follower))

    assert breakers.get("validation-positions").state == BreakerState.OPEN
    calls_before = len(positions.calls)

    result = run_async(validator.validate(make_trade("t1"), follower))
    assert not result.approved
    assert "OPEN" in result.reason
    assert len(positions.calls) == calls_before


def test_each_positions_lookup_counts_once(validator, positions, breakers, follower):
    positions.errors_for[SOURCE] = ConnectionError("source lookup timeout")
    result = run_async(validator.validate(make_trade("t1"), follower))

    assert not result.approved
    assert "source lookup timeout" in result.reason
    assert positions.calls == [FOLLOWER_1, SOURCE]
    assert breakers.get("validation-positions").failure_count == 1


def test_both_lookups_failing_count_twice(validator, positions, breakers, follower):
    positions.error = ConnectionError("timeout")
    run_async(validator.validate(make_trade("t1"), follower))

    assert breakers.get("validation-positions").failure_count == 2
    assert breakers.get("validation-positions").state == BreakerState.CLOSED
