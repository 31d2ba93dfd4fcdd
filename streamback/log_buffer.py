"""
In-memory rolling log exposed through the control API.

LogBufferHandler is attached to the package logger by configure_logging()
so every message from the backup engine also lands in the LogBuffer.
"""

import logging
import threading
import uuid
from collections import deque
from datetime import datetime

# Between INFO and WARNING; used for completed backups
SUCCESS = 25
logging.addLevelName(SUCCESS, 'SUCCESS')

DEFAULT_LOG_BUFFER_SIZE = 100


class LogBuffer:
    """Keeps the most recent entries, newest first; the oldest is dropped when full."""

    def __init__(self, max_entries: int = DEFAULT_LOG_BUFFER_SIZE):
        self._entries = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def add(self, type_: str, message: str, when: datetime = None) -> dict:
        when = when or datetime.now()
        entry = {
            'id': uuid.uuid4().hex[:12],
            'time': when.strftime('%H:%M:%S'),
            'type': type_,
            'message': message,
        }
        with self._lock:
            self._entries.appendleft(entry)
        return entry

    def entries(self) -> list:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


class LogBufferHandler(logging.Handler):
    """Logging handler that copies records into a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level=logging.INFO):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record):
        try:
            self.buffer.add(
                record.levelname,
                record.getMessage(),
                datetime.fromtimestamp(record.created)
            )
        except Exception:
            self.handleError(record)
