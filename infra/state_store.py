"""
signal-trader Infrastructure: State Store

Persistent state with atomic writes (temp file + rename).

Two small documents survive restarts:
- the processing cursor: a single integer as text
- the price extremes log: a JSON object

Reads never raise. An absent or corrupt file yields the caller's default so a
damaged state file can never stop the engine.
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}_",
        suffix=".tmp",
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(temp_path, path)
    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path}: {e}") from e


class JsonDocumentStore:
    """
    Whole-document JSON persistence.

    Features:
    - Atomic writes
    - Corrupt/absent file -> default document
    - Non-object documents rejected (treated as corrupt)
    """

    def __init__(self, path: PathLike, default: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self._default = default if default is not None else {}
        logger.info(f"Initialized JsonDocumentStore at {self.path}")

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}, using defaults")
            return copy.deepcopy(self._default)

        try:
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self.path}: {e}")
            return copy.deepcopy(self._default)

        if not isinstance(data, dict):
            logger.warning(f"Invalid document in {self.path} (expected object), using defaults")
            return copy.deepcopy(self._default)
        return data

    def save(self, document: Dict[str, Any]) -> None:
        atomic_write_text(self.path, json.dumps(document, indent=2, sort_keys=True))
        logger.debug(f"Saved {self.path}")


class CursorStore:
    """
    Highest processed sequence id, stored as plain text.

    The stored value never decreases: ``advance`` with a value at or below the
    current one is a no-op.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)
        logger.info(f"Initialized CursorStore at {self.path}")

    def load(self) -> int:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable cursor file {self.path} ({e}); starting from 0")
            return 0

    def advance(self, sequence_id: int) -> int:
        """Persist ``sequence_id`` if it moves the cursor forward. Returns the stored value."""
        current = self.load()
        if sequence_id <= current:
            return current
        atomic_write_text(self.path, str(int(sequence_id)))
        return int(sequence_id)
