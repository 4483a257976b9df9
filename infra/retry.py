"""
signal-trader Infrastructure: Retry Policy

Exponential backoff with full jitter around any external call.

Delay before retry N (0-based) is random(0, min(max_delay, base_delay * 2^N)).
Only exceptions listed in ``retry_on`` are retried; anything else propagates
immediately. After the last attempt the final exception is re-raised so the
calling activity can log it and abandon its iteration.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from core.exceptions import TransientCallError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one class of external call."""
    attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (TransientCallError,)

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "RetryPolicy":
        raw = raw or {}
        return cls(
            attempts=max(1, int(raw.get("attempts", 5))),
            base_delay_seconds=max(0.0, float(raw.get("base_delay_seconds", 1.0))),
            max_delay_seconds=max(0.0, float(raw.get("max_delay_seconds", 30.0))),
        )

    def backoff(self, attempt: int) -> float:
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))
        return random.uniform(0, ceiling)


DEFAULT_POLICY = RetryPolicy()


def call_with_retry(fn: Callable[..., T], *args: Any,
                    policy: Optional[RetryPolicy] = None,
                    description: Optional[str] = None,
                    sleep: Optional[Callable[[float], None]] = None,
                    **kwargs: Any) -> T:
    """
    Invoke ``fn(*args, **kwargs)`` under ``policy``.

    Args:
        fn: Callable to invoke
        policy: Retry policy (default: 5 attempts, 1s base, 30s cap)
        description: Label used in log lines (default: fn.__name__)
        sleep: Sleep function (default: time.sleep)

    Returns:
        Whatever ``fn`` returns on the first successful attempt

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    policy = policy or DEFAULT_POLICY
    label = description or getattr(fn, "__name__", "call")

    for attempt in range(policy.attempts):
        try:
            return fn(*args, **kwargs)
        except policy.retry_on as exc:
            if attempt >= policy.attempts - 1:
                logger.error(f"All {policy.attempts} attempts exhausted for {label}: {exc}")
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                f"{label} failed ({exc}), attempt {attempt + 1}/{policy.attempts}; "
                f"retrying in {delay:.1f}s"
            )
            (sleep or time.sleep)(delay)

    # attempts >= 1 is enforced, so the loop always returns or raises
    raise RuntimeError(f"{label}: retry loop exited without result")

