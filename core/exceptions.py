"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class TransientCallError(RuntimeError):
    """Network failure, timeout, rate limit or 5xx from an external service.

    Retried by the call wrapper; surfaces to the calling activity once the
    attempt budget is spent.
    """

    def __init__(self, endpoint: str, status_code: Optional[int] = None, message: str = ""):
        detail = f"{endpoint}: {message}" if message else endpoint
        if status_code is not None:
            detail = f"{detail} (status={status_code})"
        super().__init__(detail)
        self.endpoint = endpoint
        self.status_code = status_code


class SignalValidationError(ValueError):
    """Signal carries a ticker or score that cannot be traded."""


class LiquidityError(RuntimeError):
    """No volume data for the symbol, or dollar volume below the entry threshold."""


class InsufficientPositionError(RuntimeError):
    """Attempt to sell or cover more shares than are held."""

    def __init__(self, symbol: str, available: float, required: float):
        super().__init__(
            f"Not enough quantity for {symbol}: available={available}, required={required}"
        )
        self.symbol = symbol
        self.available = available
        self.required = required


class BrokerageRejection(RuntimeError):
    """Order create/cancel refused by the brokerage (duplicate, wash trade, ...)."""

    def __init__(self, action: str, symbol: str, status_code: Optional[int] = None, message: str = ""):
        super().__init__(f"{action} rejected for {symbol}: {message or 'no detail'}")
        self.action = action
        self.symbol = symbol
        self.status_code = status_code
        self.message = message

    @property
    def is_client_id_conflict(self) -> bool:
        """The client order id was already used, typically by an earlier attempt of the same create."""
        return "client_order_id must be unique" in (self.message or "").lower()

    @property
    def is_duplicate(self) -> bool:
        text = (self.message or "").lower()
        return (
            "already exists" in text
            or "duplicate" in text
            or "potential wash trade" in text
            or self.is_client_id_conflict
        )


class PersistenceError(RuntimeError):
    """State file could not be read or written."""
