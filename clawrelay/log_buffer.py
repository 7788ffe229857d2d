"""
Bounded in-memory log buffer backing the /logs endpoint.

A logging.Handler appends each formatted record to a deque; readers take a
snapshot of the tail under the same lock.
"""
import logging
import threading
from collections import deque

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


class LogBuffer(logging.Handler):
    """Keeps the last `capacity` records as {ts, name, level, message} dicts."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._entries: deque[dict] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "ts": record.created,
                "name": record.name,
                "level": record.levelname,
                "message": self.format(record),
            }
            with self._entries_lock:
                self._entries.append(entry)
        except Exception:
            self.handleError(record)

    def recent(self, limit: int = 200, min_level: str | None = None,
               logger: str | None = None) -> list[dict]:
        """
        Return up to `limit` newest entries, oldest first.

        `logger` keeps records from that logger and its children only, so
        "clawrelay.gateway" selects every gateway link.
        """
        with self._entries_lock:
            entries = list(self._entries)
        if logger:
            entries = [e for e in entries
                       if e["name"] == logger or e["name"].startswith(logger + ".")]
        if min_level:
            threshold = logging.getLevelName(min_level.upper())
            if isinstance(threshold, int):
                entries = [e for e in entries
                           if logging.getLevelName(e["level"]) >= threshold]
        if limit <= 0:
            return []
        return entries[-limit:]


def install_log_handler(capacity: int = 1000,
                        logger: logging.Logger | None = None) -> LogBuffer:
    """Attach a LogBuffer to `logger` (root by default), reusing one already attached."""
    target = logger or logging.getLogger()
    for handler in target.handlers:
        if isinstance(handler, LogBuffer):
            return handler
    buffer = LogBuffer(capacity)
    target.addHandler(buffer)
    return buffer
