"""
signal-trader Runner: Main Loop

Orchestrates the periodic activities of the score-driven trader.

Activities:
1. risk   - margin buffer enforcement + trailing stops (every 10s)
2. ingest - apply new score signals (file change, or 1s fallback poll)
3. stale  - cancel orders working longer than 5 minutes (every 30s)
4. window - outside the order window, cancel buys and oversized sells (every 30s)
5. sweep  - force-exit positions 3.5% past their logged extreme (every 30s)
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from core.outcomes import CycleReport
from infra.instance_lock import check_single_instance
from infra.scheduler import FileChangeWatcher, IngestionTrigger, IngestionWorker, PeriodicScheduler
from runner.context import EngineContext, build_context
from tools.config_validator import load_validated, validate_all_configs

logger = logging.getLogger(__name__)

ALLOWED_MODES = {"DRY_RUN", "PAPER", "LIVE"}
ACTIVITIES = ("risk", "ingest", "stale", "window", "sweep")

DEFAULT_SCHEDULE = {
    "risk_seconds": 10.0,
    "stale_seconds": 30.0,
    "window_seconds": 30.0,
    "sweep_seconds": 30.0,
    "ingest_poll_seconds": 1.0,
}


def configure_logging(log_cfg: Dict) -> None:
    log_file = log_cfg.get("file", "logs/signal_trader.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


class TradingLoop:
    """
    Main loop orchestrator.

    Responsibilities:
    - Validate and load config
    - Hold the single-instance lock
    - Schedule the five activities and the file-driven ingestion worker
    - Audit every activity report
    - Shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config", mode: Optional[str] = None,
                 context: Optional[EngineContext] = None, acquire_lock: bool = True):
        self.config_dir = Path(config_dir)

        errors = validate_all_configs(str(self.config_dir))
        if errors:
            raise ValueError("Invalid configuration:\n  " + "\n  ".join(errors))

        config = load_validated(str(self.config_dir))
        self.app_config = config["app"]
        self.policy_config = config["policy"]

        self.mode = (mode or self.app_config["app"]["mode"]).upper()
        if self.mode not in ALLOWED_MODES:
            raise ValueError(f"Invalid mode: {self.mode}")

        configure_logging(self.app_config.get("logging", {}))
        logger.info(f"Starting signal-trader in mode={self.mode}")

        self.instance_lock = None
        if acquire_lock:
            lock_dir = self.app_config.get("files", {}).get("lock_dir", "data")
            self.instance_lock = check_single_instance("signal-trader", lock_dir=lock_dir)
            if not self.instance_lock:
                logger.error("=" * 80)
                logger.error("ANOTHER INSTANCE IS ALREADY RUNNING")
                logger.error(f"If no other instance is running, remove {lock_dir}/signal-trader.pid")
                logger.error("=" * 80)
                raise RuntimeError("Another signal-trader instance is already running")
            logger.info("Single-instance lock acquired")

        self.ctx = context or build_context(self.app_config, self.policy_config, mode=self.mode)
        self.ctx.metrics.start()

        self.schedule = dict(DEFAULT_SCHEDULE)
        self.schedule.update({k: float(v) for k, v in (self.ctx.schedule or {}).items()})

        self.scheduler = PeriodicScheduler(metrics=self.ctx.metrics, on_report=self.ctx.audit.log_report)
        self.trigger = IngestionTrigger()
        self.watcher = FileChangeWatcher(self.ctx.signals_path, self.trigger,
                                         interval_seconds=self.ctx.watch_interval_seconds)
        self.ingestion_worker = IngestionWorker(self.trigger, self.scheduler, self._activity_fn("ingest"))

        self._running = True
        self._stopped = threading.Event()
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingLoop in {self.mode} mode")

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after in-flight activities")
        logger.warning("=" * 80)
        self._running = False
        self._stopped.set()

    def _activity_fn(self, name: str) -> Callable[[], CycleReport]:
        ctx = self.ctx
        bodies: Dict[str, Callable[[], Optional[CycleReport]]] = {
            "risk": ctx.risk_manager.run_cycle,
            "ingest": ctx.ingestor.run_pass,
            "stale": ctx.housekeeping.cancel_stale_orders,
            "window": ctx.housekeeping.cancel_out_of_window_orders,
            "sweep": ctx.housekeeping.threshold_sweep,
        }
        body = bodies[name]

        def run() -> CycleReport:
            try:
                report = body()
            except Exception as e:
                logger.error(f"{name} iteration abandoned: {e}", exc_info=True)
                return CycleReport(activity=name, error=str(e))
            if report is None:
                # ingestion pass already in flight
                return CycleReport(activity=name, notes={"dropped": True})
            if report.outcomes:
                logger.info(f"{name} complete: {report.summary()}")
            return report

        return run

    def run_once(self, activity: str) -> CycleReport:
        """Run a single activity iteration synchronously and audit it."""
        if activity not in ACTIVITIES:
            raise ValueError(f"Unknown activity {activity!r}; expected one of {', '.join(ACTIVITIES)}")
        report = self._activity_fn(activity)()
        self.ctx.audit.log_report(report)
        return report

    def _schedule_activities(self) -> None:
        for name in ("risk", "stale", "window", "sweep"):
            self.scheduler.add(name, self.schedule[f"{name}_seconds"], self._activity_fn(name))
        self.scheduler.add("ingest_poll", self.schedule["ingest_poll_seconds"],
                           lambda: self.trigger.notify("poll"))

    def run_forever(self) -> None:
        """Run all activities until a shutdown signal arrives."""
        self._schedule_activities()
        self.ingestion_worker.start()
        self.watcher.start()
        self.scheduler.start()
        self.trigger.notify("startup")
        logger.info(f"Scheduler running: {', '.join(self.scheduler.activities)}")

        try:
            while self._running:
                self._stopped.wait(1.0)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.watcher.stop()
        self.ingestion_worker.stop()
        self.scheduler.stop(wait=True)
        if self.instance_lock is not None:
            self.instance_lock.release()
            self.instance_lock = None
        logger.info("Trading loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Score-driven equities trader")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once", choices=ACTIVITIES, help="Run one activity iteration and exit")
    parser.add_argument("--mode", choices=sorted(ALLOWED_MODES), help="Override app.mode")

    args = parser.parse_args()

    loop = TradingLoop(config_dir=args.config_dir, mode=args.mode)

    if args.once:
        report = loop.run_once(args.once)
        loop.shutdown()
        logger.info(f"{args.once}: {report.summary()}")
    else:
        loop.run_forever()


if __name__ == "__main__":
    main()
