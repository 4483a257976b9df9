"""
Tests for stale-order cancellation, out-of-window cancellation and the
threshold sweep.
"""

from datetime import datetime

import pytest

from core.exceptions import BrokerageRejection
from core.housekeeping import HousekeepingPolicy, HousekeepingTasks
from core.order_gateway import OrderGateway
from core.outcomes import OutcomeStatus
from core.price_extremes import PriceExtremesLog
from infra.market_hours import EXCHANGE_TZ
from infra.state_store import JsonDocumentStore
from tests.helpers import FakeBroker, FakeMarketData, make_order, make_position

MIDDAY = datetime(2026, 1, 7, 12, 0, tzinfo=EXCHANGE_TZ)
LATE_NIGHT = datetime(2026, 1, 7, 21, 30, tzinfo=EXCHANGE_TZ)


def _tasks(broker, tmp_path, now=MIDDAY, extremes=None, mode="PAPER", policy=None):
    store = JsonDocumentStore(tmp_path / "extremes.json")
    if extremes:
        store.save(extremes)
    return HousekeepingTasks(
        broker,
        FakeMarketData(),
        OrderGateway(broker, mode=mode),
        PriceExtremesLog(store),
        policy=policy,
        clock=lambda: now,
    )


class TestStaleOrders:

    def test_cancels_orders_older_than_five_minutes(self, tmp_path):
        broker = FakeBroker()
        broker.open_orders = [
            make_order("AAPL", "buy", 10, age_seconds=301, order_id="old", now=MIDDAY),
            make_order("MSFT", "sell", 5, age_seconds=120, order_id="fresh", now=MIDDAY),
        ]

        report = _tasks(broker, tmp_path).cancel_stale_orders()

        assert broker.cancelled == ["old"]
        assert [o.order_id for o in report.submitted] == ["old"]

    def test_dry_run_only_logs(self, tmp_path):
        broker = FakeBroker()
        broker.open_orders = [make_order("AAPL", "buy", 10, age_seconds=900, order_id="old", now=MIDDAY)]

        report = _tasks(broker, tmp_path, mode="DRY_RUN").cancel_stale_orders()

        assert broker.cancelled == []
        assert report.submitted[0].reason == "dry_run"

    def test_cancel_rejection_reported(self, tmp_path):
        broker = FakeBroker()
        broker.open_orders = [make_order("AAPL", "buy", 10, age_seconds=900, order_id="old", now=MIDDAY)]

        def reject(order_id, symbol=""):
            raise BrokerageRejection("cancel_order", symbol, 422, "order is already filled")

        broker.cancel_order = reject
        report = _tasks(broker, tmp_path).cancel_stale_orders()

        assert report.failed[0].symbol == "AAPL"


class TestOrderWindow:

    def test_inside_window_does_nothing(self, tmp_path):
        broker = FakeBroker()
        broker.open_orders = [make_order("AAPL", "buy", 10, order_id="b1")]

        report = _tasks(broker, tmp_path, now=MIDDAY).cancel_out_of_window_orders()

        assert broker.cancelled == []
        assert report.outcomes == []

    def test_outside_window_cancels_buys_and_oversized_sells(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("MSFT", 10, 100.0))
        broker.open_orders = [
            make_order("AAPL", "buy", 10, order_id="b1"),
            make_order("MSFT", "sell", 10, order_id="s-ok"),
            make_order("MSFT", "sell", 15, order_id="s-big"),
            make_order("TSLA", "sell", 3, order_id="s-unheld"),
        ]

        _tasks(broker, tmp_path, now=LATE_NIGHT).cancel_out_of_window_orders()

        assert broker.cancelled == ["b1", "s-big", "s-unheld"]

    def test_configurable_window(self, tmp_path):
        policy = HousekeepingPolicy(order_window_start="09:00", order_window_end="11:00")
        tasks = _tasks(FakeBroker(), tmp_path, policy=policy)
        assert not tasks.in_order_window(MIDDAY)
        assert tasks.in_order_window(datetime(2026, 1, 7, 10, 0, tzinfo=EXCHANGE_TZ))

    @pytest.mark.parametrize("hour,minute,inside", [
        (3, 59, False), (4, 0, True), (8, 59, True), (9, 0, False), (9, 29, False),
        (9, 30, True), (19, 59, True), (20, 0, False),
    ])
    def test_default_window_excludes_pre_open(self, tmp_path, hour, minute, inside):
        tasks = _tasks(FakeBroker(), tmp_path)
        assert tasks.in_order_window(datetime(2026, 1, 7, hour, minute, tzinfo=EXCHANGE_TZ)) is inside

    def test_buys_cancelled_during_pre_open_blackout(self, tmp_path):
        broker = FakeBroker()
        broker.open_orders = [make_order("AAPL", "buy", 10, order_id="b1")]
        pre_open = datetime(2026, 1, 7, 9, 15, tzinfo=EXCHANGE_TZ)

        _tasks(broker, tmp_path, now=pre_open).cancel_out_of_window_orders()

        assert broker.cancelled == ["b1"]


class TestThresholdSweep:

    def test_long_past_threshold_exits(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("AAPL", 10, 100.0, 96.0))
        tasks = _tasks(broker, tmp_path, extremes={"AAPL": {"highest": 100.0, "lowest": 95.0}})

        report = tasks.threshold_sweep()

        (request,) = broker.placed
        assert (request.side, request.qty, request.limit_price) == ("sell", 10, 95.04)
        assert report.submitted[0].reason == "threshold sweep"

    def test_short_past_threshold_covers(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("TSLA", -4, 50.0, 52.0))
        tasks = _tasks(broker, tmp_path, extremes={"TSLA": {"highest": 52.0, "lowest": 50.0}})

        tasks.threshold_sweep()

        (request,) = broker.placed
        assert (request.side, request.qty, request.limit_price) == ("buy", 4, 52.52)

    def test_favourable_short_move_is_left_alone(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("TSLA", -4, 50.0, 47.0))
        tasks = _tasks(broker, tmp_path, extremes={"TSLA": {"highest": 50.0, "lowest": 47.0}})

        tasks.threshold_sweep()

        assert broker.placed == []

    def test_below_threshold_no_action(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("AAPL", 10, 100.0, 97.0))
        tasks = _tasks(broker, tmp_path, extremes={"AAPL": {"highest": 100.0, "lowest": 95.0}})

        assert tasks.threshold_sweep().outcomes == []

    def test_unlogged_position_measured_from_entry_price(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("AAPL", 10, 100.0, 96.0))

        _tasks(broker, tmp_path).threshold_sweep()

        (request,) = broker.placed
        assert (request.side, request.qty, request.limit_price) == ("sell", 10, 95.04)

    def test_unlogged_position_within_threshold_left_alone(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("AAPL", 10, 100.0, 97.0))
        assert _tasks(broker, tmp_path).threshold_sweep().outcomes == []

    def test_duplicate_rejection_is_not_a_failure(self, tmp_path):
        broker = FakeBroker()
        broker.add_position(make_position("AAPL", 10, 100.0, 96.0))
        broker.rejections["AAPL"] = BrokerageRejection("create_order", "AAPL", 403, "potential wash trade detected")
        tasks = _tasks(broker, tmp_path, extremes={"AAPL": {"highest": 100.0, "lowest": 95.0}})

        report = tasks.threshold_sweep()

        assert report.outcomes[0].status is OutcomeStatus.SKIPPED
        assert report.failed == []


@pytest.mark.parametrize("raw,expected", [
    ({}, 300.0),
    ({"stale_order_seconds": 120}, 120.0),
])
def test_policy_from_config(raw, expected):
    policy = HousekeepingPolicy.from_config(raw, {"threshold_sweep_pct": 4.0})
    assert policy.stale_order_seconds == expected
    assert policy.sweep_threshold_pct == 4.0


def test_blackouts_from_config():
    policy = HousekeepingPolicy.from_config({"order_blackouts": [{"start": "12:00", "end": "13:00"}]})
    assert policy.order_blackouts == [("12:00", "13:00")]
    assert HousekeepingPolicy.from_config({"order_blackouts": []}).order_blackouts == []
