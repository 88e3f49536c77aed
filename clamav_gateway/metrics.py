"""In-process scan counters owned by an orchestrator."""

from __future__ import annotations

import threading
import time

from clamav_gateway.models import MetricsSnapshot


class ScanMetrics:
    """Thread-safe counters updated once per scan.

    Shared by every concurrent scan of one orchestrator; read with
    :meth:`snapshot`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._clean = 0
        self._infected = 0
        self._failed = 0
        self._bytes = 0

    def record_verdict(self, byte_length: int, infected: bool) -> None:
        with self._lock:
            if infected:
                self._infected += 1
            else:
                self._clean += 1
            self._bytes += byte_length

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                files_scanned=self._clean + self._infected,
                clean_files=self._clean,
                infected_files=self._infected,
                failed_scans=self._failed,
                bytes_scanned=self._bytes,
                uptime_seconds=time.monotonic() - self._started,
            )
