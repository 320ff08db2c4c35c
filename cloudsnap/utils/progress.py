"""Thread-safe progress counters for backup and restore runs."""

import time
import logging
import threading
from typing import Dict, Any


logger = logging.getLogger(__name__)


def format_bytes(size: float) -> str:
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024 or unit == 'TB':
            if unit == 'B':
                return f"{int(size)} {unit}"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


class ProgressTracker:
    """Counts completed, failed and skipped files plus transferred bytes."""

    def __init__(self, total_files: int = 0, total_bytes: int = 0, label: str = 'Progress'):
        self._lock = threading.Lock()
        self.label = label
        self.total_files = total_files
        self.total_bytes = total_bytes
        self.completed = 0
        self.failed = 0
        self.skipped = 0
        self.bytes_done = 0
        self.started_at = time.monotonic()

    def start(self, total_files: int, total_bytes: int):
        with self._lock:
            self.total_files = total_files
            self.total_bytes = total_bytes
            self.started_at = time.monotonic()

    def file_completed(self, size: int):
        with self._lock:
            self.completed += 1
            self.bytes_done += size
            done = self.completed + self.failed + self.skipped
        logger.debug(f"{self.label}: {done}/{self.total_files} files")

    def file_failed(self):
        with self._lock:
            self.failed += 1

    def file_skipped(self):
        with self._lock:
            self.skipped += 1

    @property
    def processed(self) -> int:
        with self._lock:
            return self.completed + self.failed + self.skipped

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'completed': self.completed,
                'failed': self.failed,
                'skipped': self.skipped,
                'bytes': self.bytes_done,
                'total_files': self.total_files,
                'total_bytes': self.total_bytes,
                'elapsed_seconds': time.monotonic() - self.started_at,
            }

    def summary(self) -> str:
        stats = self.snapshot()
        elapsed = stats['elapsed_seconds']
        rate = stats['bytes'] / elapsed if elapsed > 0 else 0
        return (
            f"{self.label}: {stats['completed']} completed, {stats['failed']} failed, "
            f"{stats['skipped']} skipped, {format_bytes(stats['bytes'])} transferred "
            f"in {elapsed:.1f}s ({format_bytes(rate)}/s)"
        )
