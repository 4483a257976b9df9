"""
signal-trader Core: Brokerage Connector (Alpaca)

Alpaca Trading API v2 integration: account snapshot, positions, open orders,
limit order placement and cancellation.
"""

import itertools
import logging
import math
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import BrokerageRejection
from infra.http_client import JsonHttpClient
from infra.retry import RetryPolicy

logger = logging.getLogger(__name__)

PAPER_BASE = "https://paper-api.alpaca.markets"
LIVE_BASE = "https://api.alpaca.markets"


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Alpaca emits nanosecond precision; fromisoformat accepts at most microseconds
    head, dot, tail = text.partition(".")
    if dot:
        digits = "".join(itertools.takewhile(str.isdigit, tail))
        zone = tail[len(digits):]
        text = f"{head}.{digits[:6]}{zone}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AccountSnapshot:
    """Account state at one point in time"""
    equity: float
    buying_power: float
    position_market_value: float

    @property
    def regt_buying_power(self) -> float:
        # RegT allows leverage up to 2:1
        return 2.0 * self.equity

    def buffer_threshold(self, buffer_pct: float = 2.0) -> float:
        return self.regt_buying_power * (1.0 - buffer_pct / 100.0)

    @property
    def unspent_regt_pct(self) -> float:
        if self.regt_buying_power <= 0:
            return 0.0
        return (self.regt_buying_power - self.position_market_value) / self.regt_buying_power * 100.0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AccountSnapshot":
        if data.get("position_market_value") is not None:
            pmv = _to_float(data.get("position_market_value"))
        else:
            pmv = _to_float(data.get("long_market_value")) + abs(_to_float(data.get("short_market_value")))
        return cls(
            equity=_to_float(data.get("equity")),
            buying_power=_to_float(data.get("buying_power")),
            position_market_value=pmv,
        )


@dataclass
class Position:
    """Held position; qty is signed (negative = short)"""
    symbol: str
    qty: float
    avg_entry_price: float
    current_price: float
    market_value: float = 0.0

    @property
    def is_short(self) -> bool:
        return self.qty < 0

    @property
    def abs_qty(self) -> float:
        return abs(self.qty)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Position":
        qty = _to_float(data.get("qty"))
        if (data.get("side") or "").lower() == "short" and qty > 0:
            qty = -qty
        current = _to_float(data.get("current_price"))
        return cls(
            symbol=data.get("symbol", ""),
            qty=qty,
            avg_entry_price=_to_float(data.get("avg_entry_price")),
            current_price=current,
            market_value=_to_float(data.get("market_value"), qty * current),
        )


@dataclass
class OpenOrder:
    """Working order as reported by the brokerage"""
    order_id: str
    symbol: str
    side: str
    qty: float
    created_at: Optional[datetime] = None
    limit_price: Optional[float] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "OpenOrder":
        limit = data.get("limit_price")
        return cls(
            order_id=str(data.get("id", "")),
            symbol=data.get("symbol", ""),
            side=(data.get("side") or "").lower(),
            qty=_to_float(data.get("qty")),
            created_at=_parse_timestamp(data.get("created_at")),
            limit_price=_to_float(limit) if limit is not None else None,
        )


@dataclass
class OrderRequest:
    """Day limit order, extended-hours eligible"""
    symbol: str
    side: str  # "buy" or "sell"
    qty: float
    limit_price: float
    time_in_force: str = "day"
    extended_hours: bool = True
    order_type: str = "limit"
    client_order_id: str = field(default_factory=lambda: f"st_{uuid.uuid4().hex[:24]}")

    def __post_init__(self):
        if self.side not in ("buy", "sell"):
            raise ValueError(f"Invalid side {self.side!r}")
        if not self.qty or self.qty <= 0:
            raise ValueError(f"Order quantity must be positive, got {self.qty}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "qty": _format_qty(self.qty),
            "side": self.side,
            "type": self.order_type,
            "limit_price": f"{self.limit_price:.2f}",
            "time_in_force": self.time_in_force,
            "extended_hours": self.extended_hours,
            "client_order_id": self.client_order_id,
        }


def _format_qty(qty: float) -> str:
    text = f"{qty:.9f}".rstrip("0").rstrip(".")
    return text or "0"


class AlpacaBroker:
    """
    Alpaca Trading API connector.

    Supports:
    - Account data (equity, buying power, position market value)
    - Positions (all, single)
    - Orders (list open, create limit, cancel)
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 paper: bool = True, base_url: Optional[str] = None,
                 timeout: float = 20.0, retry_policy: Optional[RetryPolicy] = None):
        self.api_key = api_key or os.getenv("APCA_API_KEY_ID", "")
        self.api_secret = api_secret or os.getenv("APCA_API_SECRET_KEY", "")
        self.paper = paper
        self.base_url = base_url or (PAPER_BASE if paper else LIVE_BASE)
        self.http = JsonHttpClient(
            self.base_url,
            headers={
                "APCA-API-KEY-ID": self.api_key,
                "APCA-API-SECRET-KEY": self.api_secret,
            },
            timeout=timeout,
            retry_policy=retry_policy,
        )
        if not self.api_key or not self.api_secret:
            logger.warning("APCA_API_KEY_ID / APCA_API_SECRET_KEY not set; authenticated calls will fail")
        logger.info(f"Initialized AlpacaBroker (paper={paper}, base={self.base_url})")

    def get_account(self) -> AccountSnapshot:
        return AccountSnapshot.from_api(self.http.get("/v2/account"))

    def get_positions(self) -> List[Position]:
        data = self.http.get("/v2/positions")
        if not isinstance(data, list):
            raise ValueError(f"Positions payload is not a list: {data!r}")
        return [Position.from_api(item) for item in data]

    def get_position(self, symbol: str) -> Optional[Position]:
        """Single position, or None when nothing is held."""
        try:
            return Position.from_api(self.http.get(f"/v2/positions/{symbol}"))
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    def list_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        query: Dict[str, Any] = {"status": "open", "limit": 500}
        if symbol:
            query["symbols"] = symbol
        data = self.http.get("/v2/orders", query=query)
        return [OpenOrder.from_api(item) for item in data or []]

    def get_order_by_client_id(self, client_order_id: str) -> Optional[Dict[str, Any]]:
        """Order previously submitted under ``client_order_id``, or None if the brokerage has none."""
        try:
            return self.http.get("/v2/orders:by_client_order_id", query={"client_order_id": client_order_id})
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    def place_order(self, request: OrderRequest) -> Dict[str, Any]:
        """
        Submit a limit order.

        A create retried after a timeout or 5xx may find that the first attempt
        already landed; the brokerage then refuses the reused client order id,
        and the order already on the books is returned instead.

        Raises:
            BrokerageRejection: Order refused (4xx other than 429)
            TransientCallError: Retries exhausted on 429/5xx/network errors
        """
        try:
            result = self.http.post("/v2/orders", request.to_payload())
        except requests.exceptions.HTTPError as e:
            rejection = self._rejection("create_order", request.symbol, e)
            if rejection.is_client_id_conflict:
                existing = self._lookup_existing(request)
                if existing is not None:
                    return existing
            raise rejection from e
        logger.debug(f"Order accepted: {request.side} {request.qty} {request.symbol} -> {result.get('id')}")
        return result

    def _lookup_existing(self, request: OrderRequest) -> Optional[Dict[str, Any]]:
        try:
            existing = self.get_order_by_client_id(request.client_order_id)
        except requests.exceptions.HTTPError as e:
            logger.error(f"Could not look up order {request.client_order_id} for {request.symbol}: {e}")
            return None
        if existing:
            logger.info(
                f"Order {request.client_order_id} for {request.symbol} was accepted by an earlier attempt "
                f"-> {existing.get('id')}"
            )
        return existing or None

    def cancel_order(self, order_id: str, symbol: str = "") -> None:
        try:
            self.http.delete(f"/v2/orders/{order_id}")
        except requests.exceptions.HTTPError as e:
            raise self._rejection("cancel_order", symbol or order_id, e) from e

    @staticmethod
    def _rejection(action: str, symbol: str, error: requests.exceptions.HTTPError) -> BrokerageRejection:
        response = error.response
        status_code = response.status_code if response is not None else None
        message = ""
        if response is not None:
            try:
                message = (response.json() or {}).get("message", "") or response.text
            except ValueError:
                message = response.text
        return BrokerageRejection(action, symbol, status_code, str(message))
