"""Infrastructure modules for signal-trader"""

from .metrics import MetricsRecorder, ActivityStats  # noqa: F401
from .retry import RetryPolicy, call_with_retry  # noqa: F401
from .state_store import CursorStore, JsonDocumentStore  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"ActivityStats",
	"RetryPolicy",
	"call_with_retry",
	"CursorStore",
	"JsonDocumentStore",
]
