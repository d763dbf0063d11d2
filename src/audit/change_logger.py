"""
Model Change Logging Module
Records every batch run and model mutation with three severities
(info, warning, error) for the operator and for later review
"""
import hashlib
import json
import logging
import os
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class ChangeEventType(Enum):
    """Types of recorded events"""
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_ABORTED = "run_aborted"
    MEASURE_CREATED = "measure_created"
    MEASURE_UPDATED = "measure_updated"
    MEASURE_SKIPPED = "measure_skipped"
    MEASURE_DELETED = "measure_deleted"
    MEASURE_RENAMED = "measure_renamed"
    EXPRESSION_UPDATED = "expression_updated"
    CALCULATION_ITEM_UPDATED = "calculation_item_updated"
    MODEL_SAVED = "model_saved"
    ERROR = "error"


class ChangeSeverity(Enum):
    """Severity levels, mirrored to the standard logger"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    ChangeSeverity.INFO: logging.INFO,
    ChangeSeverity.WARNING: logging.WARNING,
    ChangeSeverity.ERROR: logging.ERROR,
}


class ChangeLogger:
    """
    Change log for model automation runs

    Features:
    - Every event is mirrored to the standard logger at its severity
    - Recent events kept in memory for run summaries
    - Optional JSON-lines file with size-based rotation
    - Thread-safe

    Usage:
        changes = ChangeLogger(log_dir="./logs")
        changes.info(ChangeEventType.MEASURE_CREATED, "Created 'Sales YTD'",
                     measure="Sales YTD", table="Sales")
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_file: str = "changes.log",
        max_file_size_mb: int = 10,
        backup_count: int = 5,
        max_memory_events: int = 1000
    ):
        """
        Initialize the change logger

        Args:
            log_dir: Directory for the JSON-lines file (None keeps events in memory only)
            log_file: Name of the log file
            max_file_size_mb: Max size before rotation
            backup_count: Number of backup files to keep
            max_memory_events: Number of recent events kept in memory
        """
        self.log_dir = Path(log_dir) if log_dir else None
        self.log_file = self.log_dir / log_file if self.log_dir else None
        self.max_file_size = max_file_size_mb * 1024 * 1024
        self.backup_count = backup_count

        self._lock = threading.Lock()
        self._session_id = self._generate_session_id()
        self._events: Deque[Dict[str, Any]] = deque(maxlen=max_memory_events)
        self._counts: Dict[str, int] = {s.value: 0 for s in ChangeSeverity}

        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Change log file: {self.log_file}")

    def _generate_session_id(self) -> str:
        """Generate a unique session ID"""
        timestamp = datetime.now(timezone.utc).isoformat()
        return hashlib.sha256(f"{timestamp}{os.getpid()}{id(self)}".encode()).hexdigest()[:16]

    def _rotate_if_needed(self):
        """Rotate log file if it exceeds max size"""
        if self.log_file.exists() and self.log_file.stat().st_size > self.max_file_size:
            for i in range(self.backup_count - 1, 0, -1):
                old_backup = self.log_dir / f"{self.log_file.stem}.{i}{self.log_file.suffix}"
                new_backup = self.log_dir / f"{self.log_file.stem}.{i + 1}{self.log_file.suffix}"
                if old_backup.exists():
                    old_backup.replace(new_backup)

            backup_1 = self.log_dir / f"{self.log_file.stem}.1{self.log_file.suffix}"
            self.log_file.replace(backup_1)

            logger.info(f"Rotated change log: {self.log_file}")

    def _write_log(self, event: Dict[str, Any]):
        """Thread-safe event recording"""
        with self._lock:
            self._events.append(event)
            self._counts[event['severity']] += 1

            if not self.log_file:
                return

            self._rotate_if_needed()
            try:
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(event, default=str) + '\n')
            except OSError as e:
                logger.error(f"Failed to write change log: {e}")

    def log_event(
        self,
        event_type: ChangeEventType,
        severity: ChangeSeverity = ChangeSeverity.INFO,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Record an event

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable message
            details: Additional details
            **kwargs: Extra fields merged into details

        Returns:
            The recorded event
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'session_id': self._session_id,
            'event_type': event_type.value,
            'severity': severity.value,
            'message': message,
            'details': {**(details or {}), **kwargs}
        }

        logger.log(_LOG_LEVELS[severity], message)
        self._write_log(event)
        return event

    def info(self, event_type: ChangeEventType, message: str, **details) -> Dict[str, Any]:
        return self.log_event(event_type, ChangeSeverity.INFO, message, details)

    def warning(self, event_type: ChangeEventType, message: str, **details) -> Dict[str, Any]:
        return self.log_event(event_type, ChangeSeverity.WARNING, message, details)

    def error(self, event_type: ChangeEventType, message: str, **details) -> Dict[str, Any]:
        return self.log_event(event_type, ChangeSeverity.ERROR, message, details)

    def get_session_summary(self) -> Dict[str, Any]:
        """Get a summary of the current session"""
        return {
            'session_id': self._session_id,
            'event_count': sum(self._counts.values()),
            'by_severity': dict(self._counts),
            'log_file': str(self.log_file) if self.log_file else None
        }

    def get_recent_events(self, count: int = 100) -> List[Dict[str, Any]]:
        """Recent events, read from the log file when one is configured"""
        if count <= 0:
            return []

        if not self.log_file:
            with self._lock:
                return list(self._events)[-count:]

        events = []
        if not self.log_file.exists():
            return events

        try:
            with open(self.log_file, 'r', encoding='utf-8') as f:
                lines = f.readlines()
            for line in lines[-count:]:
                try:
                    events.append(json.loads(line.strip()))
                except json.JSONDecodeError:
                    continue
        except OSError as e:
            logger.error(f"Failed to read change log: {e}")

        return events


# Global change logger instance
_change_logger: Optional[ChangeLogger] = None


def get_change_logger() -> ChangeLogger:
    """Get or create the global change logger instance"""
    global _change_logger
    if _change_logger is None:
        _change_logger = ChangeLogger()
    return _change_logger


def configure_change_logger(**kwargs) -> ChangeLogger:
    """Configure and return the global change logger"""
    global _change_logger
    _change_logger = ChangeLogger(**kwargs)
    return _change_logger
