"""
Tests for score-to-order sizing: tiers, RegT cap, liquidity gate, sell-half
and the liquidate-then-short path.
"""

import math
from unittest.mock import Mock

import pytest

from core.exceptions import BrokerageRejection, SignalValidationError, TransientCallError
from core.order_gateway import OrderGateway
from core.outcomes import OutcomeStatus
from core.trade_sizing import (
    SizingPolicy,
    TradeSizer,
    buy_factor,
    buy_quantity,
    sell_quantity,
    short_multiplier,
    short_quantity,
    validate_signal,
)
from tests.helpers import FakeBroker, FakeMarketData, make_position

LIQUID_VOLUME = 1_000_000.0


@pytest.fixture
def policy():
    return SizingPolicy()


def _sizer(broker, market_data, mode="PAPER"):
    return TradeSizer(broker, market_data, OrderGateway(broker, mode=mode))


class TestTiers:

    @pytest.mark.parametrize("score,factor", [
        (100, 19), (99.9, 14), (90, 14), (89, 6), (80, 6), (79.5, 3), (70, 3), (69, 0),
    ])
    def test_buy_factor(self, policy, score, factor):
        assert buy_factor(score, policy) == factor

    @pytest.mark.parametrize("score,multiplier", [
        (0, 15), (0.5, 9), (10, 9), (15, 4), (20, 4), (25, 2), (30, 2), (31, 0),
    ])
    def test_short_multiplier(self, policy, score, multiplier):
        assert short_multiplier(score, policy) == multiplier

    def test_tiers_from_config(self):
        policy = SizingPolicy.from_config({
            "buy_tiers": [{"min_score": 70, "factor": 1}, {"min_score": 100, "factor": 5}],
            "short_tiers": [{"max_score": 30, "multiplier": 1}, {"max_score": 0, "multiplier": 7}],
            "unit_divisor": 250,
        })
        assert policy.unit_divisor == 250.0
        assert buy_factor(100, policy) == 5
        assert short_multiplier(0, policy) == 7


class TestQuantities:

    def test_buy_sizing_example(self, policy):
        # equity 50,000 -> Y = 100; score 100 at 50 -> 100 * 19 / 50
        assert buy_quantity(100, 100.0, 50.0, 50_000.0, policy) == pytest.approx(38.0)

    def test_buy_capped_by_regt_headroom(self, policy):
        # Y * factor / price = 2000 * 19 / 1 far exceeds equity / price
        assert buy_quantity(100, 2_000.0, 1.0, 1_000.0, policy) == pytest.approx(1_000.0)

    def test_short_sizing_example(self, policy):
        assert short_quantity(0, 100.0, 20.0, 50_000.0, policy) == 75

    def test_fractional_short_floors_to_zero(self, policy):
        assert short_quantity(25, 10.0, 500.0, 5_000.0, policy) == 0

    def test_sell_half_rounds_up(self, policy):
        assert sell_quantity(40, 7, policy) == 4
        assert sell_quantity(40, 1, policy) == 1

    def test_sell_half_never_exceeds_fractional_holding(self, policy):
        assert sell_quantity(40, 0.4, policy) == pytest.approx(0.4)

    def test_sell_all_at_short_threshold(self, policy):
        assert sell_quantity(30, 9, policy) == 9

    def test_nothing_to_sell_without_long(self, policy):
        assert sell_quantity(40, -5, policy) == 0


class TestValidation:

    @pytest.mark.parametrize("symbol", ["aapl", "BRK.B", "", "A1", None])
    def test_invalid_symbols(self, symbol):
        with pytest.raises(SignalValidationError):
            validate_signal(symbol, 50)

    @pytest.mark.parametrize("score", [math.nan, "abc", None, math.inf])
    def test_invalid_scores(self, score):
        with pytest.raises(SignalValidationError):
            validate_signal("AAPL", score)


class TestExecute:

    def test_buy_submits_day_limit_with_offset(self):
        broker = FakeBroker(equity=50_000.0)
        sizer = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME}))

        outcome = sizer.execute("AAPL", 100)

        assert outcome.status is OutcomeStatus.SUBMITTED
        (request,) = broker.placed
        assert request.side == "buy"
        assert request.qty == pytest.approx(38.0)
        assert request.limit_price == 50.35
        assert request.time_in_force == "day"
        assert request.extended_hours is True

    def test_liquidity_gate_blocks_entry(self):
        # 100,000 shares at 40 -> 4,000,000 notional
        broker = FakeBroker(equity=50_000.0)
        sizer = _sizer(broker, FakeMarketData({"AAPL": 40.0}, {"AAPL": 100_000.0}))

        outcome = sizer.execute("AAPL", 95)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason.startswith("liquidity")
        assert broker.placed == []

    def test_zero_volume_is_skipped(self):
        broker = FakeBroker()
        outcome = _sizer(broker, FakeMarketData({"AAPL": 40.0}, {})).execute("AAPL", 95)
        assert outcome.status is OutcomeStatus.SKIPPED
        assert broker.placed == []

    def test_invalid_signal_skipped_without_calls(self):
        broker = FakeBroker()
        outcome = _sizer(broker, FakeMarketData()).execute("aapl", 95)
        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason.startswith("validation")

    def test_missing_price_skipped(self):
        broker = FakeBroker()
        outcome = _sizer(broker, FakeMarketData({}, {"AAPL": LIQUID_VOLUME})).execute("AAPL", 95)
        assert outcome.status is OutcomeStatus.SKIPPED
        assert broker.placed == []

    def test_neutral_score_holds(self):
        broker = FakeBroker()
        outcome = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME})).execute("AAPL", 55)
        assert outcome.action == "hold"
        assert broker.placed == []

    def test_sell_half_of_long(self):
        broker = FakeBroker().add_position(make_position("AAPL", 11, 40.0, 50.0))
        sizer = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME}))

        outcome = sizer.execute("AAPL", 40)

        assert outcome.status is OutcomeStatus.SUBMITTED
        (request,) = broker.placed
        assert (request.side, request.qty, request.limit_price) == ("sell", 6, 49.5)

    def test_sell_without_position_skipped(self):
        broker = FakeBroker()
        outcome = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME})).execute("AAPL", 40)
        assert outcome.status is OutcomeStatus.SKIPPED
        assert broker.placed == []

    def test_low_score_liquidates_long_then_shorts(self):
        broker = FakeBroker(equity=50_000.0).add_position(make_position("TSLA", 10, 25.0, 20.0))
        sizer = _sizer(broker, FakeMarketData({"TSLA": 20.0}, {"TSLA": LIQUID_VOLUME}))

        outcome = sizer.execute("TSLA", 0)

        exit_long, short = broker.placed
        assert (exit_long.side, exit_long.qty, exit_long.limit_price) == ("sell", 10, 20.0)
        assert (short.side, short.qty, short.limit_price) == ("sell", 75.0, 19.86)
        assert outcome.action == "short"
        assert outcome.status is OutcomeStatus.SUBMITTED

    def test_low_score_illiquid_sells_whole_long_without_short(self):
        broker = FakeBroker().add_position(make_position("TSLA", 10, 25.0, 20.0))
        sizer = _sizer(broker, FakeMarketData({"TSLA": 20.0}, {"TSLA": 1_000.0}))

        outcome = sizer.execute("TSLA", 10)

        (request,) = broker.placed
        assert (request.side, request.qty) == ("sell", 10)
        assert outcome.action == "sell"

    def test_fractional_short_rejected(self):
        broker = FakeBroker(equity=5_000.0)
        sizer = _sizer(broker, FakeMarketData({"BRK": 5_000.0}, {"BRK": LIQUID_VOLUME}))

        outcome = sizer.execute("BRK", 25)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert broker.placed == []

    def test_rejection_reported_as_failed(self):
        broker = FakeBroker(equity=50_000.0)
        broker.rejections["AAPL"] = BrokerageRejection("create_order", "AAPL", 403, "insufficient buying power")
        sizer = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME}))

        outcome = sizer.execute("AAPL", 100)

        assert outcome.status is OutcomeStatus.FAILED

    def test_transient_exhaustion_reported_as_failed(self):
        broker = FakeBroker()
        market_data = FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME})
        market_data.prior_session_volume = Mock(side_effect=TransientCallError("/bars", 503))

        outcome = _sizer(broker, market_data).execute("AAPL", 100)

        assert outcome.status is OutcomeStatus.FAILED

    def test_dry_run_does_not_submit(self):
        broker = FakeBroker(equity=50_000.0)
        sizer = _sizer(broker, FakeMarketData({"AAPL": 50.0}, {"AAPL": LIQUID_VOLUME}), mode="DRY_RUN")

        outcome = sizer.execute("AAPL", 100)

        assert outcome.status is OutcomeStatus.SUBMITTED
        assert outcome.reason == "dry_run"
        assert broker.placed == []
