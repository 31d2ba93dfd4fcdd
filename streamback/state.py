"""
Run state shared between the backup executor and its observers.

A single RunState is owned by the BackupExecutor and handed by reference to
the walker (which records file progress), the scheduler (which records the
next run time) and the control routes (which read snapshots).
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    IDLE = 'IDLE'
    CONNECTING = 'CONNECTING'
    STREAMING = 'STREAMING'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RunState:
    """Status of the current (or most recent) backup run."""

    def __init__(self):
        self._lock = threading.Lock()

        self.status = RunStatus.IDLE
        self.started_at = None
        self.current_file = ''
        self.file_count = 0
        self.completed_at = None
        self.failure_reason = None
        self.archive_name = None

        self.last_backup = None
        self.last_object_id = None
        self.last_outcome = None
        self.next_backup = None

    @property
    def is_busy(self) -> bool:
        return self.status != RunStatus.IDLE

    def try_begin(self) -> bool:
        """Atomically move from IDLE to CONNECTING. Returns False if a run is active."""
        with self._lock:
            if self.status != RunStatus.IDLE:
                return False
            self.status = RunStatus.CONNECTING
            return True

    def start_run(self, archive_name: str):
        with self._lock:
            self.archive_name = archive_name
            self.started_at = _utcnow()
            self.completed_at = None
            self.failure_reason = None
            self.current_file = ''
            self.file_count = 0

    def set_status(self, status: RunStatus):
        with self._lock:
            self.status = status

    def record_file(self, path: str):
        with self._lock:
            self.current_file = path
            self.file_count += 1

    def record_success(self, object_id: str):
        with self._lock:
            self.last_backup = _utcnow()
            self.last_object_id = object_id
            self.last_outcome = 'success'

    def record_failure(self, reason: str):
        with self._lock:
            self.failure_reason = reason
            self.last_outcome = 'failed'

    def finish(self):
        """Reset transient state and return to IDLE. file_count is kept for reporting."""
        with self._lock:
            self.current_file = ''
            self.completed_at = _utcnow()
            self.status = RunStatus.IDLE

    def set_next_backup(self, when: Optional[datetime]):
        with self._lock:
            self.next_backup = when

    def snapshot(self) -> dict:
        """Read-only copy of the state for observers."""
        with self._lock:
            return {
                'status': self.status.value,
                'archive_name': self.archive_name,
                'started_at': _isoformat(self.started_at),
                'current_file': self.current_file,
                'file_count': self.file_count,
                'completed_at': _isoformat(self.completed_at),
                'failure_reason': self.failure_reason,
                'last_backup': _isoformat(self.last_backup),
                'last_object_id': self.last_object_id,
                'last_outcome': self.last_outcome,
                'next_backup': _isoformat(self.next_backup),
            }
