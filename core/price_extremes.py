"""
signal-trader Core: Price Extremes Log

Trailing high/low memory per held symbol. Longs measure retracement from the
highest price seen since entry, shorts from the lowest.

Owned by the position risk manager: loaded once at the start of a cycle,
mutated in memory, and saved once at the end.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from infra.state_store import JsonDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class PriceExtremes:
    highest: float
    lowest: float

    def gain_pct(self, current_price: float, is_short: bool) -> float:
        """
        Signed move since the logged extreme, in percent.

        Long: (current - highest) / highest. Short: (lowest - current) / lowest.
        Negative values are adverse for the position.
        """
        if is_short:
            return (self.lowest - current_price) / self.lowest * 100.0 if self.lowest else 0.0
        return (current_price - self.highest) / self.highest * 100.0 if self.highest else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"highest": self.highest, "lowest": self.lowest}


class PriceExtremesLog:
    """In-memory view of the extremes document with explicit load/save."""

    def __init__(self, store: JsonDocumentStore):
        self.store = store
        self._entries: Dict[str, PriceExtremes] = {}

    def load(self) -> "PriceExtremesLog":
        self._entries = {}
        for symbol, raw in self.store.load().items():
            try:
                highest = float(raw["highest"])
                lowest = float(raw["lowest"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Dropping malformed extremes entry for {symbol}: {raw!r}")
                continue
            self._entries[symbol] = PriceExtremes(max(highest, lowest), min(highest, lowest))
        return self

    def save(self) -> None:
        self.store.save({symbol: e.to_dict() for symbol, e in self._entries.items()})

    def symbols(self) -> List[str]:
        return list(self._entries)

    def get(self, symbol: str, default_price: Optional[float] = None) -> Optional[PriceExtremes]:
        """Logged extremes, or both set to ``default_price`` when the symbol is new."""
        entry = self._entries.get(symbol)
        if entry is not None:
            return PriceExtremes(entry.highest, entry.lowest)
        if default_price is None:
            return None
        return PriceExtremes(default_price, default_price)

    def update(self, symbol: str, avg_entry_price: float, current_price: float) -> bool:
        """Widen the extremes with the entry and current price. Returns True if the entry changed."""
        entry = self._entries.get(symbol)
        candidates = [p for p in (avg_entry_price, current_price) if p and p > 0]
        if not candidates:
            return False

        if entry is None:
            self._entries[symbol] = PriceExtremes(max(candidates), min(candidates))
            return True

        highest = max([entry.highest, *candidates])
        lowest = min([entry.lowest, *candidates])
        if highest == entry.highest and lowest == entry.lowest:
            return False
        self._entries[symbol] = PriceExtremes(highest, lowest)
        return True

    def prune(self, held_symbols: Iterable[str]) -> List[str]:
        """Delete entries for symbols no longer held. Returns the removed symbols."""
        held = set(held_symbols)
        removed = [symbol for symbol in self._entries if symbol not in held]
        for symbol in removed:
            del self._entries[symbol]
        return removed
