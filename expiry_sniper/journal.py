import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import IO, Optional

log = logging.getLogger(__name__)


class EventJournal:
    """Appends one JSON event per line to a daily file, rotating at UTC midnight."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self.enabled = bool(base_dir)
        self._handle: Optional[IO] = None
        self._current_date: str = ""
        self._lock = threading.Lock()
        if self.enabled:
            os.makedirs(base_dir, exist_ok=True)

    def _today_utc(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")

    def _get_handle(self) -> IO:
        today = self._today_utc()
        if today != self._current_date:
            if self._current_date:
                log.info(f"Day rotation: {self._current_date} -> {today}")
            self._close_handle()
            self._current_date = today
        if self._handle is None:
            filepath = os.path.join(self.base_dir, f"events_{today}.jsonl")
            self._handle = open(filepath, "a", encoding="utf-8")
            log.info(f"Opened {filepath}")
        return self._handle

    def _close_handle(self):
        if self._handle is not None:
            try:
                self._handle.close()
            except Exception as e:
                log.error(f"Error closing journal: {e}")
            self._handle = None

    def record(self, event: str, **fields):
        """Write an event. Failures are logged, never raised."""
        if not self.enabled:
            return
        row = {"ts": int(time.time()), "event": event, **fields}
        line = json.dumps(row, separators=(",", ":"), ensure_ascii=False, default=str)
        try:
            with self._lock:
                f = self._get_handle()
                f.write(line + "\n")
                f.flush()
        except Exception as e:
            log.warning(f"Failed to log event {event}: {e}")

    def close(self):
        with self._lock:
            self._close_handle()


class NullJournal(EventJournal):
    """Journal that records nothing."""

    def __init__(self):
        super().__init__("")
