"""
signal-trader Core: Order Gateway

Single boundary where orders leave the process. Builds day-limit,
extended-hours order requests, applies position checks for exits, and turns
brokerage rejections into FAILED outcomes so one symbol's failure never
interrupts the caller's loop.

Transient errors (retries exhausted) are not caught here; they propagate to
the calling activity.
"""

import logging
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import List, Optional

from core.broker_alpaca import AlpacaBroker, OpenOrder, OrderRequest
from core.exceptions import BrokerageRejection, InsufficientPositionError
from core.outcomes import Outcome

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
QTY_EPSILON = 1e-9


def round_cents(price: float) -> float:
    """Round half-up to two decimals."""
    return float(Decimal(repr(price)).quantize(CENT, rounding=ROUND_HALF_UP))


def floor_cents(price: float) -> float:
    """Round to cents, then floor (never rounds a sell/cover limit up a cent through float noise)."""
    return float(Decimal(repr(round_cents(price))).quantize(CENT, rounding=ROUND_FLOOR))


class OrderGateway:
    """
    Submit and cancel orders.

    Args:
        broker: Brokerage connector
        mode: "DRY_RUN" logs instead of submitting; "PAPER"/"LIVE" submit
        metrics: Optional MetricsRecorder
    """

    def __init__(self, broker: AlpacaBroker, mode: str = "DRY_RUN", metrics=None):
        self.broker = broker
        self.mode = mode.upper()
        self.metrics = metrics

    @property
    def dry_run(self) -> bool:
        return self.mode == "DRY_RUN"

    def _record(self, outcome: Outcome) -> Outcome:
        if self.metrics is not None:
            self.metrics.record_order(outcome.action, outcome.status.value)
        return outcome

    def submit(self, symbol: str, side: str, qty: float, limit_price: float,
               action: Optional[str] = None, reason: str = "") -> Outcome:
        """Place a day limit order. Rejections become FAILED outcomes."""
        action = action or side
        try:
            request = OrderRequest(symbol=symbol, side=side, qty=qty, limit_price=limit_price)
        except ValueError as e:
            return self._record(Outcome.skipped(symbol, action, str(e)))

        if self.dry_run:
            logger.info(f"DRY_RUN: would {action} {qty} {symbol} @ ${limit_price:.2f} ({reason or 'no reason'})")
            return self._record(Outcome.submitted(symbol, action, qty, limit_price, reason="dry_run"))

        try:
            result = self.broker.place_order(request)
        except BrokerageRejection as e:
            if e.is_duplicate:
                logger.debug(f"Duplicate {action} for {symbol} rejected by brokerage: {e}")
                return self._record(Outcome.skipped(symbol, action, f"duplicate order: {e}"))
            logger.error(f"Error executing {action} for {symbol}: {e}")
            return self._record(Outcome.failed(symbol, action, str(e), qty=qty, limit_price=limit_price))

        logger.info(
            f"Order successful: {action} {qty} shares of {symbol} at ${limit_price:.2f} "
            f"(total ${qty * limit_price:,.2f}) {reason}".rstrip()
        )
        return self._record(
            Outcome.submitted(symbol, action, qty, limit_price, order_id=result.get("id"), reason=reason)
        )

    def _held_qty(self, symbol: str) -> float:
        position = self.broker.get_position(symbol)
        return position.qty if position else 0.0

    def sell_position(self, symbol: str, qty: float, limit_price: float, reason: str = "") -> Outcome:
        """Sell part or all of a long. Skipped if the long is smaller than ``qty``."""
        qty = abs(qty)
        try:
            held = self._held_qty(symbol)
            if held + QTY_EPSILON < qty:
                raise InsufficientPositionError(symbol, max(held, 0.0), qty)
        except InsufficientPositionError as e:
            logger.error(str(e))
            return self._record(Outcome.skipped(symbol, "sell", str(e)))
        return self.submit(symbol, "sell", qty, limit_price, action="sell", reason=reason)

    def cover_position(self, symbol: str, qty: float, limit_price: float,
                       allow_pending: bool = False, reason: str = "") -> Outcome:
        """
        Buy to cover part or all of a short.

        Unless ``allow_pending`` is set (the caller already netted out working
        orders), an existing open buy order for the symbol means a cover is
        already in flight and nothing is sent.
        """
        qty = abs(qty)
        if not allow_pending:
            pending = [o for o in self.broker.list_open_orders(symbol)
                       if o.symbol == symbol and o.side == "buy"]
            if pending:
                logger.info(f"{symbol} currently has an existing cover order")
                return self._record(Outcome.skipped(symbol, "cover", "cover order already open"))
        try:
            held = self._held_qty(symbol)
            if held >= 0 or abs(held) + QTY_EPSILON < qty:
                raise InsufficientPositionError(symbol, abs(min(held, 0.0)), qty)
        except InsufficientPositionError as e:
            logger.error(str(e))
            return self._record(Outcome.skipped(symbol, "cover", str(e)))
        return self.submit(symbol, "buy", qty, limit_price, action="cover", reason=reason)

    def cancel(self, order: OpenOrder, reason: str = "") -> Outcome:
        if self.dry_run:
            logger.info(f"DRY_RUN: would cancel {order.side} order {order.order_id} for {order.symbol} ({reason})")
            return self._record(Outcome.submitted(order.symbol, "cancel", order.qty,
                                                  order.limit_price, order.order_id, reason="dry_run"))
        try:
            self.broker.cancel_order(order.order_id, order.symbol)
        except BrokerageRejection as e:
            logger.error(f"Error cancelling {order.side} order {order.order_id} for {order.symbol}: {e}")
            return self._record(Outcome.failed(order.symbol, "cancel", str(e), qty=order.qty))
        logger.info(f"Cancelled {order.side} order {order.order_id} for {order.symbol} ({reason})")
        return self._record(Outcome.submitted(order.symbol, "cancel", order.qty,
                                              order.limit_price, order.order_id, reason=reason))


def committed_qty(orders: List[OpenOrder], symbol: str, side: str) -> float:
    """Total quantity of open ``side`` orders already working for ``symbol``."""
    return sum(o.qty for o in orders if o.symbol == symbol and o.side == side)


__all__ = [
    "OrderGateway",
    "committed_qty",
    "floor_cents",
    "round_cents",
]
