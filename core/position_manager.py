"""
Position Management: Margin Buffer and Trailing Stops

Periodic control loop over the held book:
- Trims the weakest position when exposure crowds the RegT ceiling
- Tracks the trailing high/low of every position and exits on a retracement
- Nets new exit orders against exits already working at the brokerage
- Keeps the price extremes log in step with what is actually held
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from core.broker_alpaca import AccountSnapshot, AlpacaBroker, OpenOrder, Position
from core.exceptions import CriticalDataUnavailable, TransientCallError
from core.market_data import MarketDataService
from core.order_gateway import OrderGateway, committed_qty, floor_cents, round_cents
from core.outcomes import CycleReport, Outcome
from core.price_extremes import PriceExtremesLog

logger = logging.getLogger(__name__)

QTY_EPSILON = 1e-9


@dataclass
class RiskPolicy:
    """Margin buffer and exit parameters"""
    margin_buffer_pct: float = 2.0      # stay this far below RegT buying power
    trim_slice_pct: float = 2.0         # of RegT buying power, per trim
    trailing_stop_pct: float = 5.0      # retracement from the logged extreme
    sell_exit_offset: float = 0.99
    cover_exit_offset: float = 1.01

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "RiskPolicy":
        raw = raw or {}
        policy = cls()
        for key in ("margin_buffer_pct", "trim_slice_pct", "trailing_stop_pct",
                    "sell_exit_offset", "cover_exit_offset"):
            if key in raw:
                setattr(policy, key, float(raw[key]))
        return policy


@dataclass
class TrimCandidate:
    """Position selected for a margin trim"""
    symbol: str
    current_price: float
    qty: float
    gain_pct: float


class PositionRiskManager:
    """
    Margin-buffer enforcement and trailing-stop exits.

    Responsibilities:
    - Compare position market value against 98% of RegT buying power
    - Liquidate a 2%-of-RegT slice of the weakest position when over
    - Widen each position's logged high/low and exit on a 5% retracement
    - Prune extremes for symbols no longer held and persist once per cycle
    """

    def __init__(self, broker: AlpacaBroker, market_data: MarketDataService,
                 gateway: OrderGateway, extremes: PriceExtremesLog,
                 policy: Optional[RiskPolicy] = None, metrics=None):
        self.broker = broker
        self.market_data = market_data
        self.gateway = gateway
        self.extremes = extremes
        self.policy = policy or RiskPolicy()
        self.metrics = metrics

        logger.info(
            f"PositionRiskManager initialized: buffer={self.policy.margin_buffer_pct}%, "
            f"trim_slice={self.policy.trim_slice_pct}%, trailing_stop={self.policy.trailing_stop_pct}%"
        )

    def run_cycle(self) -> CycleReport:
        """
        One control-loop pass over a single account/positions snapshot.

        Returns:
            CycleReport with one outcome per order decision
        """
        report = CycleReport(activity="risk")

        account = self.broker.get_account()
        if account.equity <= 0:
            raise CriticalDataUnavailable("account equity")
        held_positions = [p for p in self.broker.get_positions() if p.qty != 0]
        positions = self.market_data.value_positions(held_positions)
        self.extremes.load()

        self._log_margin(account, len(held_positions))
        report.notes["position_market_value"] = account.position_market_value
        report.notes["buffer_threshold"] = account.buffer_threshold(self.policy.margin_buffer_pct)

        if self.over_buffer(account):
            logger.warning("Total position value exceeds margin buffer threshold. Adjusting positions...")
            report.add(self._trim_weakest(account, positions))

        open_orders = self.broker.list_open_orders()
        for symbol, position in positions.items():
            try:
                report.add(self._apply_trailing_stop(position, open_orders))
            except (TransientCallError, requests.exceptions.RequestException) as e:
                logger.error(f"Trailing-stop check for {symbol} failed: {e}")
                report.add(Outcome.failed(symbol, "exit", f"error: {e}"))

        for symbol in self.extremes.prune(p.symbol for p in held_positions):
            logger.info(f"Removed {symbol} from the log as it is no longer owned.")

        self.extremes.save()
        return report

    def over_buffer(self, account: AccountSnapshot) -> bool:
        return account.position_market_value > account.buffer_threshold(self.policy.margin_buffer_pct)

    def _log_margin(self, account: AccountSnapshot, open_positions: int) -> None:
        logger.info(
            f"MARGIN INFO: positions=${account.position_market_value:,.2f} equity=${account.equity:,.2f} "
            f"buying_power=${account.buying_power:,.2f} regT=${account.regt_buying_power:,.2f} "
            f"({account.unspent_regt_pct:.2f}% of RegT unspent)"
        )
        if self.metrics is not None:
            self.metrics.record_margin(100.0 - account.unspent_regt_pct, open_positions)

    def select_trim_candidate(self, positions: Dict[str, Position]) -> Optional[TrimCandidate]:
        """Position with the lowest gain since its logged extreme (first one wins ties)."""
        weakest: Optional[TrimCandidate] = None
        for symbol, position in positions.items():
            extremes = self.extremes.get(symbol, default_price=position.current_price)
            gain = extremes.gain_pct(position.current_price, position.is_short)
            if weakest is None or gain < weakest.gain_pct:
                weakest = TrimCandidate(symbol, position.current_price, position.qty, gain)
        return weakest

    def trim_quantity(self, candidate: TrimCandidate, account: AccountSnapshot) -> float:
        slice_usd = account.regt_buying_power * self.policy.trim_slice_pct / 100.0
        if abs(candidate.current_price * candidate.qty) < slice_usd:
            return abs(candidate.qty)
        return slice_usd / candidate.current_price

    def _trim_weakest(self, account: AccountSnapshot, positions: Dict[str, Position]) -> Optional[Outcome]:
        candidate = self.select_trim_candidate(positions)
        if candidate is None:
            logger.warning("Over margin buffer but no priced positions to trim")
            return None

        logger.info(f"Lowest gaining position: {candidate.symbol} with a gain of {candidate.gain_pct:.2f}%")
        qty = self.trim_quantity(candidate, account)
        if candidate.qty < 0:
            limit_price = round_cents(candidate.current_price * self.policy.cover_exit_offset)
            return self.gateway.cover_position(candidate.symbol, qty, limit_price, reason="margin trim")
        limit_price = round_cents(candidate.current_price * self.policy.sell_exit_offset)
        return self.gateway.sell_position(candidate.symbol, qty, limit_price, reason="margin trim")

    def _apply_trailing_stop(self, position: Position, open_orders: List[OpenOrder]) -> Optional[Outcome]:
        symbol = position.symbol
        if self.extremes.update(symbol, position.avg_entry_price, position.current_price):
            logged = self.extremes.get(symbol)
            logger.info(
                f"Updated {symbol} in the log with highest price: {logged.highest} "
                f"and lowest price: {logged.lowest}"
            )

        extremes = self.extremes.get(symbol, default_price=position.current_price)
        gain = extremes.gain_pct(position.current_price, position.is_short)
        if gain > -self.policy.trailing_stop_pct:
            return None

        verb = "cover" if position.is_short else "sell"
        logger.info(f"{symbol} has crossed the {self.policy.trailing_stop_pct}% threshold ({gain:.2f}%)")

        exit_side = "buy" if position.is_short else "sell"
        already_ordered = committed_qty(open_orders, symbol, exit_side)
        remaining = position.abs_qty - already_ordered
        if remaining <= QTY_EPSILON:
            logger.info(f"Sufficient existing {verb} orders for {symbol}, no action needed.")
            return Outcome.skipped(symbol, verb, "exit already covered by open orders")

        if already_ordered > 0:
            logger.info(f"Found existing {verb} orders for {symbol}. Adjusting quantity to {remaining}")

        if position.is_short:
            limit_price = floor_cents(position.current_price * self.policy.cover_exit_offset)
            return self.gateway.cover_position(symbol, remaining, limit_price,
                                               allow_pending=True, reason="trailing stop")
        limit_price = floor_cents(position.current_price * self.policy.sell_exit_offset)
        return self.gateway.sell_position(symbol, remaining, limit_price, reason="trailing stop")
