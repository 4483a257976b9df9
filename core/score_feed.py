"""
signal-trader Core: Score Feed

Ordered, deduplicated consumption of the append-only score file.

Each line is ``sequenceId, ticker, score``. A pass reads the whole file,
keeps signals above the persisted cursor, applies them one at a time in id
order and moves the cursor after every attempt.
"""

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

from core.outcomes import CycleReport, Outcome, OutcomeStatus
from infra.state_store import CursorStore

logger = logging.getLogger(__name__)

ATTEMPT_ONCE = "attempt_once"
RETRY_FAILED = "retry_failed"
UNDECODABLE = "\ufffd"


@dataclass(frozen=True)
class ScoreSignal:
    sequence_id: int
    ticker: str
    score: Union[int, float]


def _parse_score(text: str) -> Union[int, float]:
    """Whole-number score, truncated toward zero; NaN when not a finite number."""
    try:
        value = float(text)
    except ValueError:
        return math.nan
    if not math.isfinite(value):
        return math.nan
    return math.trunc(value)


def parse_line(line: str) -> Optional[ScoreSignal]:
    """Parse one record. Returns None for blank lines; raises ValueError for malformed ones."""
    if not line.strip():
        return None
    if UNDECODABLE in line:
        raise ValueError("line contains undecodable bytes")
    parts = [p.strip() for p in line.split(",")]
    if len(parts) < 3:
        raise ValueError(f"expected 3 fields, got {len(parts)}")
    sequence_id = int(parts[0])
    return ScoreSignal(sequence_id=sequence_id, ticker=parts[1], score=_parse_score(parts[2]))


def read_signals(path: Union[str, Path]) -> List[ScoreSignal]:
    """All well-formed signals in the file; an unreadable file yields an empty list."""
    try:
        # undecodable bytes become U+FFFD so only the affected line is rejected
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.error(f"Failed to read scores file {path}: {e}")
        return []

    signals: List[ScoreSignal] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        try:
            signal = parse_line(line)
        except ValueError as e:
            logger.warning(f"Skipping malformed score line {lineno} ({line!r}): {e}")
            continue
        if signal is not None:
            signals.append(signal)
    return signals


def pending_signals(signals: List[ScoreSignal], cursor: int) -> List[ScoreSignal]:
    """Signals above the cursor, ascending by id, first occurrence of each id kept."""
    seen = set()
    result = []
    for signal in sorted(signals, key=lambda s: s.sequence_id):
        if signal.sequence_id <= cursor or signal.sequence_id in seen:
            continue
        seen.add(signal.sequence_id)
        result.append(signal)
    return result


class ScoreIngestor:
    """
    Applies new signals to the trade executor.

    Args:
        signals_path: Score file to read
        cursor_store: Persisted highest-attempted id
        apply: Callable(symbol, score) -> Outcome (TradeSizer.execute)
        policy: "attempt_once" advances past failed signals; "retry_failed"
            stops at the first FAILED outcome so the next pass retries it
        metrics: Optional MetricsRecorder
    """

    def __init__(self, signals_path: Union[str, Path], cursor_store: CursorStore,
                 apply: Callable[[str, Union[int, float]], Outcome],
                 policy: str = ATTEMPT_ONCE, metrics=None):
        if policy not in (ATTEMPT_ONCE, RETRY_FAILED):
            raise ValueError(f"Unknown ingestion policy {policy!r}")
        self.signals_path = Path(signals_path)
        self.cursor_store = cursor_store
        self.apply = apply
        self.policy = policy
        self.metrics = metrics
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def run_pass(self) -> Optional[CycleReport]:
        """
        One ingestion pass. Returns None when another pass is already running.
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Ingestion pass already running; dropping trigger")
            return None
        try:
            return self._run_pass()
        finally:
            self._busy.release()

    def _run_pass(self) -> CycleReport:
        report = CycleReport(activity="ingest")
        cursor = self.cursor_store.load()
        pending = pending_signals(read_signals(self.signals_path), cursor)
        report.notes["cursor_start"] = cursor

        if not pending:
            logger.debug("No new scores to process.")
            report.notes["cursor_end"] = cursor
            return report

        for signal in pending:
            logger.info(f"Processing score #{signal.sequence_id} for {signal.ticker}: {signal.score}")
            try:
                outcome = self.apply(signal.ticker, signal.score)
            except Exception as e:
                logger.error(f"Unhandled error applying signal #{signal.sequence_id}: {e}", exc_info=True)
                outcome = Outcome.failed(signal.ticker, "hold", f"error: {e}")
            report.add(outcome)

            if outcome.status is OutcomeStatus.FAILED and self.policy == RETRY_FAILED:
                logger.warning(
                    f"Signal #{signal.sequence_id} failed ({outcome.reason}); "
                    f"cursor held at {cursor} for retry"
                )
                self._record(outcome, cursor)
                break

            cursor = self.cursor_store.advance(signal.sequence_id)
            self._record(outcome, cursor)

        report.notes["cursor_end"] = cursor
        return report

    def _record(self, outcome: Outcome, cursor: int) -> None:
        if self.metrics is not None:
            self.metrics.record_signal(outcome.status.value, cursor)
