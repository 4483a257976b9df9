"""
signal-trader Core: Trade Sizing & Execution

Maps one sentiment score onto orders:

    score >= 70  -> buy, sized by score tier        (liquidity gated)
    score <= 30  -> liquidate any long, then short  (liquidity gated)
    score <= 45  -> sell half (or all at <= 30) of the held long
    otherwise    -> hold

Position unit Y = equity / 500. Buys and shorts are capped at one times
equity of notional (RegT 2x minus the equity already committed).
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests

from core.exceptions import LiquidityError, SignalValidationError, TransientCallError
from core.market_data import MarketDataService
from core.order_gateway import OrderGateway, round_cents
from core.outcomes import Outcome

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z]+$")


@dataclass
class SizingPolicy:
    """Score thresholds, tier tables and limit-price offsets"""
    unit_divisor: float = 500.0
    buy_threshold: float = 70.0
    sell_threshold: float = 45.0
    short_threshold: float = 30.0
    min_notional_usd: float = 5_000_000.0
    # (min_score, factor), checked top-down; 100 is matched exactly
    buy_tiers: List[Tuple[float, float]] = field(
        default_factory=lambda: [(100.0, 19.0), (90.0, 14.0), (80.0, 6.0), (70.0, 3.0)]
    )
    # (max_score, multiplier), the tightest bound that matches wins
    short_tiers: List[Tuple[float, float]] = field(
        default_factory=lambda: [(0.0, 15.0), (10.0, 9.0), (20.0, 4.0), (30.0, 2.0)]
    )
    buy_limit_offset: float = 1.007
    sell_limit_offset: float = 0.99
    short_limit_offset: float = 0.993

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "SizingPolicy":
        raw = raw or {}
        policy = cls()
        for key in ("unit_divisor", "buy_threshold", "sell_threshold", "short_threshold",
                    "min_notional_usd", "buy_limit_offset", "sell_limit_offset", "short_limit_offset"):
            if key in raw:
                setattr(policy, key, float(raw[key]))
        if raw.get("buy_tiers"):
            policy.buy_tiers = sorted(
                ((float(t["min_score"]), float(t["factor"])) for t in raw["buy_tiers"]),
                reverse=True,
            )
        if raw.get("short_tiers"):
            policy.short_tiers = sorted(
                (float(t["max_score"]), float(t["multiplier"])) for t in raw["short_tiers"]
            )
        return policy


def buy_factor(score: float, policy: SizingPolicy) -> float:
    """Tier factor for an entry. The top tier applies to its exact score only."""
    top_score, top_factor = policy.buy_tiers[0]
    if score == top_score:
        return top_factor
    for min_score, factor in policy.buy_tiers[1:]:
        if score >= min_score:
            return factor
    return 0.0


def short_multiplier(score: float, policy: SizingPolicy) -> float:
    """Multiplier for a new short. The lowest tier applies to its exact score only."""
    bottom_score, bottom_multiplier = policy.short_tiers[0]
    if score == bottom_score:
        return bottom_multiplier
    for max_score, multiplier in policy.short_tiers[1:]:
        if score <= max_score:
            return multiplier
    return 0.0


def regt_cap_qty(equity: float, price: float) -> float:
    """Shares that keep the new position within the remaining RegT headroom."""
    return (equity * 2 - equity) / price


def buy_quantity(score: float, unit: float, price: float, equity: float,
                 policy: SizingPolicy) -> float:
    factor = buy_factor(score, policy)
    return min(unit * factor / price, regt_cap_qty(equity, price))


def sell_quantity(score: float, held_qty: float, policy: SizingPolicy) -> float:
    """Whole long at or below the short threshold, otherwise half rounded up (never above held)."""
    if held_qty <= 0:
        return 0.0
    if score <= policy.short_threshold:
        return held_qty
    return min(float(math.ceil(held_qty / 2)), held_qty)


def short_quantity(score: float, unit: float, price: float, equity: float,
                   policy: SizingPolicy) -> int:
    multiplier = short_multiplier(score, policy)
    # Shorts cannot be fractional
    return int(math.floor(min(unit * multiplier / price, regt_cap_qty(equity, price))))


def validate_signal(symbol: Any, score: Any) -> float:
    """Return the score as a float, or raise SignalValidationError."""
    if not isinstance(symbol, str) or not SYMBOL_PATTERN.match(symbol):
        raise SignalValidationError(f"Invalid ticker {symbol!r}")
    try:
        value = float(score)
    except (TypeError, ValueError):
        raise SignalValidationError(f"Score for {symbol} is not a number: {score!r}")
    if not math.isfinite(value):
        raise SignalValidationError(f"Score for {symbol} is not a number: {score!r}")
    return value


class TradeSizer:
    """
    Turns a (symbol, score) signal into zero or more orders.

    Every call returns a single summarising Outcome; brokerage rejections,
    liquidity gates and validation problems never raise.
    """

    def __init__(self, broker, market_data: MarketDataService, gateway: OrderGateway,
                 policy: Optional[SizingPolicy] = None):
        self.broker = broker
        self.market_data = market_data
        self.gateway = gateway
        self.policy = policy or SizingPolicy()

    def execute(self, symbol: str, score: Any) -> Outcome:
        try:
            value = validate_signal(symbol, score)
        except SignalValidationError as e:
            logger.info(f"{e}. No trade executed.")
            return Outcome.skipped(str(symbol), "hold", f"validation: {e}")

        try:
            return self._execute(symbol, value)
        except LiquidityError as e:
            logger.info(f"{e}. No trade executed.")
            return Outcome.skipped(symbol, "hold", f"liquidity: {e}")
        except (TransientCallError, requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Trade for {symbol} abandoned: {e}")
            return Outcome.failed(symbol, "hold", f"error: {e}")

    def _execute(self, symbol: str, score: float) -> Outcome:
        policy = self.policy

        volume = self.market_data.prior_session_volume(symbol)
        if volume <= 0:
            raise LiquidityError(f"No trading volume available for {symbol}")

        account = self.broker.get_account()
        equity = account.equity
        unit = equity / policy.unit_divisor

        price = self.market_data.current_price(symbol)
        if not price:
            logger.error(f"Error fetching price for {symbol}")
            return Outcome.skipped(symbol, "hold", "no current price")

        notional = volume * price
        liquid = notional >= policy.min_notional_usd
        logger.info(
            f"{symbol} score={score:g} price=${price:.2f} prior-day notional=${notional:,.0f} "
            f"equity=${equity:,.2f} buying_power=${account.buying_power:,.2f}"
        )

        if score >= policy.buy_threshold:
            if not liquid:
                raise LiquidityError(f"Trade value of {symbol} is below the threshold")
            qty = buy_quantity(score, unit, price, equity, policy)
            if qty <= 0:
                return Outcome.skipped(symbol, "buy", "zero size")
            limit_price = round_cents(price * policy.buy_limit_offset)
            return self.gateway.submit(symbol, "buy", qty, limit_price, reason=f"score={score:g}")

        if score <= policy.short_threshold and liquid:
            return self._open_short(symbol, score, unit, price, equity)

        if score <= policy.sell_threshold:
            if score <= policy.short_threshold:
                logger.info(f"Trade value of {symbol} is below the threshold. No short executed.")
            position = self.broker.get_position(symbol)
            held = position.qty if position else 0.0
            qty = sell_quantity(score, held, policy)
            if qty <= 0:
                logger.info(f"No current long position in {symbol} to sell")
                return Outcome.skipped(symbol, "sell", "no long position")
            limit_price = round_cents(price * policy.sell_limit_offset)
            return self.gateway.sell_position(symbol, qty, limit_price, reason=f"score={score:g}")

        logger.info(f"No action needed for {symbol} with score {score:g}")
        return Outcome.skipped(symbol, "hold", "neutral score")

    def _open_short(self, symbol: str, score: float, unit: float, price: float,
                    equity: float) -> Outcome:
        policy = self.policy

        position = self.broker.get_position(symbol)
        if position and position.qty > 0:
            exit_outcome = self.gateway.sell_position(
                symbol, position.qty, round_cents(price), reason="exit long before short"
            )
            if not exit_outcome.ok:
                logger.warning(f"Could not liquidate long {symbol} before shorting: {exit_outcome.reason}")

        qty = short_quantity(score, unit, price, equity, policy)
        if qty <= 0:
            logger.info(f"Cannot short fractional shares for {symbol}. Skipping this order.")
            return Outcome.skipped(symbol, "short", "fractional short size")

        limit_price = round_cents(price * policy.short_limit_offset)
        return self.gateway.submit(symbol, "sell", float(qty), limit_price, action="short",
                                   reason=f"score={score:g}")
