"""
signal-trader Core: Market Data

Session-aware price lookups and prior-session volume.

During the regular session the latest trade comes from the Alpaca data API.
Outside it, sizing decisions use the pre/post-market trade from Financial
Modeling Prep, and position valuation uses the alternate-hours price file
written by an external process.
"""

import logging
import math
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

import requests

from core.broker_alpaca import Position
from core.exceptions import TransientCallError
from infra.http_client import JsonHttpClient
from infra.market_hours import day_bounds, is_session_hours, previous_weekdays
from infra.retry import RetryPolicy

logger = logging.getLogger(__name__)

ALPACA_DATA_BASE = "https://data.alpaca.markets"
FMP_BASE = "https://financialmodelingprep.com"
SYMBOL_PATTERN = re.compile(r"^[A-Z][A-Z0-9.\-]*$")


def _positive(value) -> Optional[float]:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


class AlpacaMarketData:
    """Latest trades and daily bars from the Alpaca market data API."""

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 base_url: str = ALPACA_DATA_BASE, timeout: float = 10.0,
                 retry_policy: Optional[RetryPolicy] = None):
        self.http = JsonHttpClient(
            base_url,
            headers={
                "APCA-API-KEY-ID": api_key or os.getenv("APCA_API_KEY_ID", ""),
                "APCA-API-SECRET-KEY": api_secret or os.getenv("APCA_API_SECRET_KEY", ""),
            },
            timeout=timeout,
            retry_policy=retry_policy,
        )

    def latest_trade_price(self, symbol: str) -> Optional[float]:
        data = self.http.get(f"/v2/stocks/{symbol}/trades/latest") or {}
        return _positive((data.get("trade") or {}).get("p"))

    def daily_volume(self, symbol: str, start: datetime, end: datetime) -> float:
        """Volume of the first daily bar in ``[start, end]``, or 0 when there is none."""
        data = self.http.get(
            f"/v2/stocks/{symbol}/bars",
            query={
                "timeframe": "1Day",
                "start": start.isoformat(),
                "end": end.isoformat(),
                "adjustment": "raw",
            },
        ) or {}
        bars = data.get("bars") or []
        if not bars:
            return 0.0
        return float(bars[0].get("v") or 0.0)


class FmpPriceClient:
    """Pre/post-market trade price from Financial Modeling Prep."""

    def __init__(self, api_key: Optional[str] = None, base_url: str = FMP_BASE,
                 timeout: float = 10.0, retry_policy: Optional[RetryPolicy] = None):
        self.api_key = api_key or os.getenv("FMP_API_KEY", "")
        self.http = JsonHttpClient(base_url, timeout=timeout, retry_policy=retry_policy)

    def extended_hours_price(self, symbol: str) -> Optional[float]:
        data = self.http.get(
            f"/api/v4/pre-post-market-trade/{symbol}",
            query={"apikey": self.api_key},
        )
        if isinstance(data, list):
            data = data[0] if data else {}
        return _positive((data or {}).get("price"))


class AltHoursPriceFile:
    """Reads ``SYMBOL: price`` lines produced by the extended-hours price feed."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> Dict[str, float]:
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.error(f"Error reading alternate-hours price file {self.path}: {e}")
            return {}

        prices: Dict[str, float] = {}
        for lineno, line in enumerate(text.splitlines(), start=1):
            symbol, sep, raw_price = line.partition(":")
            symbol = symbol.strip()
            if not sep or not SYMBOL_PATTERN.match(symbol):
                if line.strip():
                    logger.warning(f"Skipping unparseable price line {lineno} in {self.path}: {line!r}")
                continue
            price = _positive(raw_price.strip())
            if price is not None:
                prices[symbol] = price
        return prices


class MarketDataService:
    """
    Session-aware facade used by sizing and risk activities.

    Args:
        alpaca: Regular-session trade and bar source
        alt_prices: Pre/post-market trade price source
        alt_hours_file: Price file used to value positions outside the session
        clock: Returns the current time (injectable for tests)
    """

    def __init__(self, alpaca: AlpacaMarketData, alt_prices: FmpPriceClient,
                 alt_hours_file: AltHoursPriceFile, clock=None,
                 volume_lookback_days: int = 7):
        self.alpaca = alpaca
        self.alt_prices = alt_prices
        self.alt_hours_file = alt_hours_file
        self.clock = clock
        self.volume_lookback_days = volume_lookback_days

    def _now(self) -> Optional[datetime]:
        return self.clock() if self.clock else None

    def in_session(self) -> bool:
        return is_session_hours(self._now())

    def current_price(self, symbol: str) -> Optional[float]:
        """Latest trade price, or None when no source has one."""
        session = self.in_session()
        source = "alpaca" if session else "fmp"
        try:
            if session:
                price = self.alpaca.latest_trade_price(symbol)
            else:
                price = self.alt_prices.extended_hours_price(symbol)
        except (TransientCallError, requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Error fetching price for {symbol} from {source}: {e}")
            return None

        if price is None:
            logger.error(f"No valid price data found for {symbol} from {source}")
        return price

    def prior_session_volume(self, symbol: str) -> float:
        """
        Volume of the most recent weekday bar within the lookback window.

        Returns 0.0 when no bar is found (holidays, halted or unknown symbols).
        """
        for day in previous_weekdays(self._now(), self.volume_lookback_days):
            start, end = day_bounds(day)
            volume = self.alpaca.daily_volume(symbol, start, end)
            if volume > 0:
                return volume
        return 0.0

    def value_positions(self, positions: Iterable[Position]) -> Dict[str, Position]:
        """
        Positions keyed by symbol, with current prices for this moment.

        Outside the session, prices come from the alternate-hours file and
        positions absent from it are left out.
        """
        positions = list(positions)
        if self.in_session():
            return {p.symbol: p for p in positions if p.current_price > 0}

        live_prices = self.alt_hours_file.read()
        valued: Dict[str, Position] = {}
        for position in positions:
            price = live_prices.get(position.symbol)
            if price is None:
                logger.debug(f"No alternate-hours price for {position.symbol}; skipping this cycle")
                continue
            valued[position.symbol] = Position(
                symbol=position.symbol,
                qty=position.qty,
                avg_entry_price=position.avg_entry_price,
                current_price=price,
                market_value=position.qty * price,
            )
        return valued
