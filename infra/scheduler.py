"""
Periodic activity scheduling and file-change triggered ingestion.

Each activity runs on its own fixed period. A firing that arrives while the
previous iteration of the same activity is still running is dropped (and
counted), never queued. Ingestion is additionally driven by a file watcher
feeding a single-slot trigger: bursts of notifications coalesce into at most
one pending pass.
"""

import logging
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from infra.metrics import ActivityStats

logger = logging.getLogger(__name__)


class ActivityGuard:
    """Non-blocking per-activity exclusion tokens."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def is_running(self, name: str) -> bool:
        return self._lock_for(name).locked()

    def try_run(self, name: str, fn: Callable[[], object]) -> Tuple[bool, object]:
        """
        Run ``fn`` unless ``name`` is already running.

        Returns:
            (ran, result). ``ran`` is False when the token was held.
        """
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            return False, None
        try:
            return True, fn()
        finally:
            lock.release()


@dataclass
class ScheduledActivity:
    name: str
    interval_seconds: float
    fn: Callable[[], object]
    next_due: float = 0.0


def _report_counts(result) -> Tuple[int, int, int]:
    if result is None or not hasattr(result, "outcomes"):
        return 0, 0, 0
    return len(result.submitted), len(result.skipped), len(result.failed)


class PeriodicScheduler:
    """
    Fixed-period dispatcher over a worker pool.

    Activities with different names run concurrently; the same activity never
    overlaps itself. Exceptions raised by an activity are logged and recorded,
    and the activity keeps its schedule.
    """

    def __init__(self, metrics=None, guard: Optional[ActivityGuard] = None,
                 max_workers: int = 8, on_report: Optional[Callable[[object], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.metrics = metrics
        self.guard = guard or ActivityGuard()
        self.on_report = on_report
        self._clock = clock
        self._activities: List[ScheduledActivity] = []
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="activity")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(self, name: str, interval_seconds: float, fn: Callable[[], object]) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be positive, got {interval_seconds}")
        self._activities.append(ScheduledActivity(name, float(interval_seconds), fn))
        logger.info(f"Scheduled {name} every {interval_seconds}s")

    @property
    def activities(self) -> List[str]:
        return [a.name for a in self._activities]

    def run_activity(self, name: str, fn: Callable[[], object]) -> bool:
        """
        Run one iteration of ``name`` under its exclusion token.

        Returns False if the firing was dropped because an iteration was in flight.
        """
        started = time.monotonic()
        try:
            ran, result = self.guard.try_run(name, fn)
        except Exception as e:
            logger.error(f"Activity {name} raised: {e}", exc_info=True)
            self._observe(name, "error", None, time.monotonic() - started)
            return True

        if not ran:
            logger.debug(f"Skipping {name} firing: previous iteration still running")
            if self.metrics is not None:
                self.metrics.record_skipped_firing(name)
            return False

        status = "ok"
        if result is not None and getattr(result, "error", None):
            status = "error"
        self._observe(name, status, result, time.monotonic() - started)
        if self.on_report is not None and hasattr(result, "outcomes"):
            self.on_report(result)
        return True

    def _observe(self, name: str, status: str, result, duration: float) -> None:
        if self.metrics is None:
            return
        submitted, skipped, failed = _report_counts(result)
        self.metrics.observe_activity(ActivityStats(
            activity=name,
            status=status,
            submitted=submitted,
            skipped=skipped,
            failed=failed,
            duration_seconds=duration,
        ))

    def dispatch_due(self) -> List[str]:
        """Submit every activity whose period has elapsed. Returns the names fired."""
        now = self._clock()
        fired = []
        for activity in self._activities:
            if now < activity.next_due:
                continue
            activity.next_due = now + activity.interval_seconds
            self._executor.submit(self.run_activity, activity.name, activity.fn)
            fired.append(activity.name)
        return fired

    def _seconds_until_next(self) -> float:
        if not self._activities:
            return 1.0
        now = self._clock()
        return max(0.0, min(a.next_due for a in self._activities) - now)

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            self.dispatch_due()
            self._stop.wait(min(self._seconds_until_next(), 1.0))

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._dispatch_loop, name="Scheduler", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._executor.shutdown(wait=wait)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True once stopped."""
        return self._stop.wait(timeout)


class IngestionTrigger:
    """Single-slot wake-up: any number of notifications leave at most one pending."""

    def __init__(self):
        self._slot: "queue.Queue[str]" = queue.Queue(maxsize=1)

    def notify(self, source: str = "poll") -> bool:
        """Returns True if this notification filled the slot, False if it coalesced."""
        try:
            self._slot.put_nowait(source)
        except queue.Full:
            return False
        return True

    @property
    def pending(self) -> bool:
        return not self._slot.empty()

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            return self._slot.get(timeout=timeout)
        except queue.Empty:
            return None


class FileChangeWatcher:
    """
    Stat-polling watcher that notifies a trigger when a file's mtime or size moves.
    """

    def __init__(self, path: Union[str, Path], trigger: IngestionTrigger,
                 interval_seconds: float = 0.25):
        self.path = Path(path)
        self.trigger = trigger
        self.interval_seconds = interval_seconds
        self._last: Optional[Tuple[float, int]] = self._stat()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _stat(self) -> Optional[Tuple[float, int]]:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return st.st_mtime, st.st_size

    def check(self) -> bool:
        """Compare against the last observation and notify on change."""
        current = self._stat()
        if current == self._last:
            return False
        self._last = current
        logger.debug(f"{self.path} changed; triggering ingestion")
        self.trigger.notify("watch")
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.check()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="ScoreFileWatcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None


class IngestionWorker:
    """
    Drains the trigger and runs ingestion passes through the scheduler's
    exclusion token, so watcher and poll paths never overlap.
    """

    def __init__(self, trigger: IngestionTrigger, scheduler: PeriodicScheduler,
                 run_pass: Callable[[], object], name: str = "ingest"):
        self.trigger = trigger
        self.scheduler = scheduler
        self.run_pass = run_pass
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def drain_once(self, timeout: Optional[float] = 0.5) -> bool:
        """Wait for one trigger and run a pass. Returns True if a pass was attempted."""
        source = self.trigger.wait(timeout=timeout)
        if source is None or self._stop.is_set():
            return False
        self.scheduler.run_activity(self.name, self.run_pass)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            self.drain_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="IngestionWorker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self.trigger.notify("stop")
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
