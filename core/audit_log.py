"""
signal-trader Core: Audit Logger

Structured JSONL record of every activity iteration and its order decisions.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.outcomes import CycleReport

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs each activity iteration with:
    - Activity name and mode
    - Submitted / skipped / failed counts
    - One entry per order decision with its reason
    - Activity-level notes (cursor range, margin snapshot)

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None, mode: str = "DRY_RUN"):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
            mode: Trading mode stamped on every entry
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.mode = mode
        self._write_lock = threading.Lock()

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_report(self, report: CycleReport) -> None:
        """Append one activity report. Quiet iterations (no outcomes, no error) are not written."""
        if not report.outcomes and not report.error:
            return

        entry = report.to_dict()
        entry["mode"] = self.mode
        entry["status"] = self._determine_status(report)

        try:
            line = json.dumps(entry, default=str)
            with self._write_lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            logger.debug(f"Audited {report.activity}: status={entry['status']}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def _determine_status(self, report: CycleReport) -> str:
        if report.error:
            return "ERROR"
        if report.failed:
            return "PARTIAL" if report.submitted else "FAILED"
        if report.submitted:
            return "EXECUTED"
        return "NO_ACTION"

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries (most recent first).
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))
