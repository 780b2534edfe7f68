"""
MedRefer periodic sync scheduler.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING

from medrefer.core.logging import get_logger

if TYPE_CHECKING:
    from medrefer.sync.service import OfflineSyncService

logger = get_logger(__name__)


class SyncScheduler:
    """Runs sync passes on a background thread every ``interval``.

    A pass only starts when the service is online, idle and has queued
    work. ``trigger()`` wakes the thread early.
    """

    def __init__(self, service: OfflineSyncService, interval: timedelta) -> None:
        self.service = service
        self.interval = interval
        self._stopping = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.passes = 0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._stopping.clear()
            self._wake.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="medrefer-sync-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.debug("Sync scheduler started", interval_s=self.interval.total_seconds())

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        self._stopping.set()
        self._wake.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Sync scheduler stopped")

    def trigger(self) -> None:
        self._wake.set()

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.wait(self.interval.total_seconds())
            self._wake.clear()
            if self._stopping.is_set():
                break
            self.tick()

    def tick(self) -> bool:
        """Run one pass if the service is ready. Returns whether it ran."""
        if not self.service.should_sync():
            return False
        try:
            self.service.perform_sync()
        except Exception as e:
            logger.error("Scheduled sync failed", error=str(e))
            return False
        self.passes += 1
        return True
