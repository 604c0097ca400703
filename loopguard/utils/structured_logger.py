"""
Structured event log of Work Item state transitions.

Each transition is appended as one JSON line:
1. timestamp, item id, name, tag and new state
2. the route the gate chose and the pid that wrote the entry
3. optional context (error type, timeout, duration)

``record`` only builds the entry and queues it, so it is safe to call on the
event loop thread. A single writer thread appends queued entries to the
file; ``flush`` waits for it and ``close`` stops it.
"""

import json
import logging
import os
import queue
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models.work_item import WorkItem, WorkState

logger = logging.getLogger(__name__)


class WorkEventLog:
    """Thread-safe JSON-lines log of Work Item lifecycle events."""

    def __init__(self, log_file: Union[str, Path], process_id: Optional[int] = None):
        """Initialize the event log.

        Args:
            log_file: Path to the log file (parent directories are created)
            process_id: Process ID recorded on entries (defaults to current PID)
        """
        self.log_file = Path(log_file)
        self.process_id = process_id or os.getpid()
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._writer: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def _create_entry(
        self,
        item: WorkItem,
        state: WorkState,
        route: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "item_id": item.id,
            "name": item.name,
            "tag": item.tag.value,
            "state": state.value,
            "pid": self.process_id,
        }
        if route:
            entry["route"] = route
        if context:
            entry["context"] = context
        return entry

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        with self._write_lock:
            try:
                json_line = json.dumps(entry, separators=(",", ":"), default=str) + "\n"
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json_line)
            except OSError as e:
                # The event log is diagnostic only; losing an entry must not fail the item
                logger.warning("Failed to write work event to %s: %s", self.log_file, e)

    def _drain(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is None:
                    return
                self._write_entry(entry)
            finally:
                self._queue.task_done()

    def _ensure_writer(self) -> None:
        with self._lock:
            if self._writer is None or not self._writer.is_alive():
                self._writer = threading.Thread(target=self._drain, name="loopguard-event-log", daemon=True)
                self._writer.start()

    def record(
        self,
        item: WorkItem,
        state: WorkState,
        route: Optional[str] = None,
        **context: Any,
    ) -> None:
        """Queue one state transition for the writer thread."""
        self._queue.put(self._create_entry(item, state, route, context or None))
        self._ensure_writer()

    def flush(self) -> None:
        """Block until every queued entry is on disk."""
        self._queue.join()

    def close(self) -> None:
        """Write out queued entries and stop the writer thread."""
        with self._lock:
            if self._writer is not None:
                self._queue.put(None)
                self._writer.join()
                self._writer = None

    def read(self) -> List[Dict[str, Any]]:
        """Read back all entries (used by tests and the CLI)."""
        self.flush()
        if not self.log_file.exists():
            return []
        entries = []
        with open(self.log_file, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
