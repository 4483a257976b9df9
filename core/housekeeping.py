"""
signal-trader Core: Housekeeping

Order hygiene and a coarse force-exit sweep that run on their own timers:
- cancel open orders that have been working too long
- outside the order window, cancel buys and oversized sells
- exit any position that has moved too far against its logged extreme
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.broker_alpaca import AlpacaBroker
from core.market_data import MarketDataService
from core.order_gateway import OrderGateway, committed_qty, round_cents
from core.outcomes import CycleReport
from core.price_extremes import PriceExtremesLog
from infra.market_hours import in_window, parse_clock

logger = logging.getLogger(__name__)

QTY_EPSILON = 1e-9


@dataclass
class HousekeepingPolicy:
    stale_order_seconds: float = 300.0
    order_window_start: str = "04:00"
    order_window_end: str = "20:00"
    # ranges inside the window that still count as outside it (pre-open auction)
    order_blackouts: List[Tuple[str, str]] = field(default_factory=lambda: [("09:00", "09:30")])
    sweep_threshold_pct: float = 3.5
    sell_exit_offset: float = 0.99
    cover_exit_offset: float = 1.01

    @classmethod
    def from_config(cls, housekeeping: Optional[Dict[str, Any]],
                    risk: Optional[Dict[str, Any]] = None) -> "HousekeepingPolicy":
        housekeeping = housekeeping or {}
        risk = risk or {}
        policy = cls()
        if "stale_order_seconds" in housekeeping:
            policy.stale_order_seconds = float(housekeeping["stale_order_seconds"])
        if "order_window_start" in housekeeping:
            policy.order_window_start = str(housekeeping["order_window_start"])
        if "order_window_end" in housekeeping:
            policy.order_window_end = str(housekeeping["order_window_end"])
        if "order_blackouts" in housekeeping:
            policy.order_blackouts = [
                (str(b["start"]), str(b["end"])) for b in housekeeping["order_blackouts"] or []
            ]
        if "threshold_sweep_pct" in risk:
            policy.sweep_threshold_pct = float(risk["threshold_sweep_pct"])
        for key in ("sell_exit_offset", "cover_exit_offset"):
            if key in risk:
                setattr(policy, key, float(risk[key]))
        return policy


class HousekeepingTasks:
    """Stale-order canceller, out-of-window canceller and threshold sweep."""

    def __init__(self, broker: AlpacaBroker, market_data: MarketDataService,
                 gateway: OrderGateway, extremes: PriceExtremesLog,
                 policy: Optional[HousekeepingPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.broker = broker
        self.market_data = market_data
        self.gateway = gateway
        self.extremes = extremes
        self.policy = policy or HousekeepingPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._window_start = parse_clock(self.policy.order_window_start)
        self._window_end = parse_clock(self.policy.order_window_end)
        self._blackouts = [(parse_clock(start), parse_clock(end)) for start, end in self.policy.order_blackouts]

    def cancel_stale_orders(self) -> CycleReport:
        report = CycleReport(activity="stale")
        now = self.clock()
        for order in self.broker.list_open_orders():
            if order.created_at is None:
                continue
            age = (now - order.created_at).total_seconds()
            if age > self.policy.stale_order_seconds:
                logger.info(f"Order {order.order_id} for {order.symbol} is {age:.0f}s old; cancelling")
                report.add(self.gateway.cancel(order, reason="stale"))
        return report

    def in_order_window(self, ts: Optional[datetime] = None) -> bool:
        ts = ts or self.clock()
        if not in_window(ts, self._window_start, self._window_end):
            return False
        return not any(in_window(ts, start, end) for start, end in self._blackouts)

    def cancel_out_of_window_orders(self) -> CycleReport:
        report = CycleReport(activity="window")
        if self.in_order_window():
            return report

        orders = self.broker.list_open_orders()
        if not orders:
            return report

        held: Dict[str, float] = {p.symbol: p.qty for p in self.broker.get_positions()}
        logger.info(f"Outside order window; reviewing {len(orders)} open orders")
        for order in orders:
            if order.side == "buy":
                report.add(self.gateway.cancel(order, reason="outside order window"))
            elif order.side == "sell" and order.qty > max(held.get(order.symbol, 0.0), 0.0) + QTY_EPSILON:
                report.add(self.gateway.cancel(order, reason="sell exceeds held quantity"))
        return report

    def threshold_sweep(self) -> CycleReport:
        """Force-exit positions that moved past the sweep threshold against their logged extreme."""
        report = CycleReport(activity="sweep")
        self.extremes.load()
        positions = self.market_data.value_positions(
            p for p in self.broker.get_positions() if p.qty != 0
        )
        if not positions:
            return report

        open_orders = None
        for symbol, position in positions.items():
            # not yet logged by the risk cycle: measure from the entry price
            extremes = self.extremes.get(symbol, default_price=position.avg_entry_price)
            gain = extremes.gain_pct(position.current_price, position.is_short)
            if gain > -self.policy.sweep_threshold_pct:
                continue

            if open_orders is None:
                open_orders = self.broker.list_open_orders()
            exit_side = "buy" if position.is_short else "sell"
            remaining = position.abs_qty - committed_qty(open_orders, symbol, exit_side)
            if remaining <= QTY_EPSILON:
                logger.debug(f"Sweep exit for {symbol} already working")
                continue

            logger.info(f"{symbol} moved {gain:.2f}% against its logged extreme; force exit")
            if position.is_short:
                limit_price = round_cents(position.current_price * self.policy.cover_exit_offset)
                report.add(self.gateway.cover_position(symbol, remaining, limit_price,
                                                       allow_pending=True, reason="threshold sweep"))
            else:
                limit_price = round_cents(position.current_price * self.policy.sell_exit_offset)
                report.add(self.gateway.sell_position(symbol, remaining, limit_price,
                                                      reason="threshold sweep"))
        return report


__all__ = ["HousekeepingPolicy", "HousekeepingTasks"]
