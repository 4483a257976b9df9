"""
signal-trader Core: Outcomes

Result types for per-signal and per-symbol operations, aggregated into
per-activity reports so callers (and tests) can inspect what happened
without parsing log output.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class OutcomeStatus(Enum):
    """Terminal state of a single operation"""
    SUBMITTED = "submitted"   # Order accepted by the brokerage (or logged in DRY_RUN)
    SKIPPED = "skipped"       # Nothing to do, or gated out (validation, liquidity, ...)
    FAILED = "failed"         # Attempted and refused/errored


@dataclass
class Outcome:
    """Result of one operation against one symbol."""
    symbol: str
    action: str  # "buy", "sell", "short", "cover", "cancel", "hold", ...
    status: OutcomeStatus
    reason: str = ""
    qty: float = 0.0
    limit_price: Optional[float] = None
    order_id: Optional[str] = None

    @classmethod
    def submitted(cls, symbol: str, action: str, qty: float,
                  limit_price: Optional[float] = None, order_id: Optional[str] = None,
                  reason: str = "") -> "Outcome":
        return cls(symbol=symbol, action=action, status=OutcomeStatus.SUBMITTED,
                   reason=reason, qty=qty, limit_price=limit_price, order_id=order_id)

    @classmethod
    def skipped(cls, symbol: str, action: str, reason: str) -> "Outcome":
        return cls(symbol=symbol, action=action, status=OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, symbol: str, action: str, reason: str, qty: float = 0.0,
               limit_price: Optional[float] = None) -> "Outcome":
        return cls(symbol=symbol, action=action, status=OutcomeStatus.FAILED,
                   reason=reason, qty=qty, limit_price=limit_price)

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "status": self.status.value,
            "reason": self.reason,
            "qty": self.qty,
            "limit_price": self.limit_price,
            "order_id": self.order_id,
        }


@dataclass
class CycleReport:
    """Outcomes of one activity iteration (risk cycle, sweep, cancellation pass)."""
    activity: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcomes: List[Outcome] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def add(self, outcome: Optional[Outcome]) -> Optional[Outcome]:
        if outcome is not None:
            self.outcomes.append(outcome)
        return outcome

    def extend(self, outcomes: List[Outcome]) -> None:
        for outcome in outcomes:
            self.add(outcome)

    def by_status(self, status: OutcomeStatus) -> List[Outcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def submitted(self) -> List[Outcome]:
        return self.by_status(OutcomeStatus.SUBMITTED)

    @property
    def skipped(self) -> List[Outcome]:
        return self.by_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[Outcome]:
        return self.by_status(OutcomeStatus.FAILED)

    @property
    def success(self) -> bool:
        return self.error is None

    def summary(self) -> Dict[str, int]:
        return {
            "submitted": len(self.submitted),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity": self.activity,
            "started_at": self.started_at.isoformat(),
            "summary": self.summary(),
            "notes": self.notes,
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
