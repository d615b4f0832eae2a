"""Periodic and on-demand triggers for the deduplication scan."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from pipelines.errors import ScanAlreadyRunningError
from pipelines.scan import ScanOrchestrator, ScanResult

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_DAYS = 7
DEFAULT_INITIAL_DELAY_SEC = 60.0
SECONDS_PER_DAY = 24 * 60 * 60


class DeduplicationScheduler:
    """Run the scan every ``interval_days`` on a chain of daemon timers."""

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        interval_days: float = DEFAULT_INTERVAL_DAYS,
        enabled: bool = True,
        initial_delay_sec: float = DEFAULT_INITIAL_DELAY_SEC,
    ) -> None:
        if interval_days <= 0:
            raise ValueError("interval_days must be positive")
        self.orchestrator = orchestrator
        self.interval_days = interval_days
        self.enabled = enabled
        self.initial_delay_sec = initial_delay_sec
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    @property
    def started(self) -> bool:
        return self._timer is not None

    def _schedule(self, delay: float) -> None:
        with self._lock:
            if self._stopped.is_set():
                return
            timer = threading.Timer(delay, self._tick)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        self.run_scheduled_scan()
        self._schedule(self.interval_days * SECONDS_PER_DAY)

    def start(self) -> None:
        if not self.enabled:
            logger.info("Deduplication scheduler disabled; not starting.")
            return
        if self.started:
            logger.info("Deduplication scheduler already started.")
            return
        self._stopped.clear()
        logger.info(
            "Starting deduplication scheduler: every %s days, first scan in %ss.",
            self.interval_days,
            self.initial_delay_sec,
        )
        self._schedule(self.initial_delay_sec)

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Deduplication scheduler stopped.")

    def run_scheduled_scan(self) -> Optional[ScanResult]:
        # No caller to report to: log and keep the schedule alive.
        try:
            return self.orchestrator.run_scan()
        except ScanAlreadyRunningError:
            logger.warning("Scheduled deduplication scan skipped: a scan is already running.")
        except Exception:  # pylint: disable=broad-except
            logger.exception("Scheduled deduplication scan failed.")
        return None

    def run_manual_scan(self) -> ScanResult:
        logger.info("Manual deduplication scan requested.")
        return self.orchestrator.run_scan()

    def status(self) -> Dict[str, object]:
        return {
            "started": self.started,
            "running": self.orchestrator.running,
            "interval_days": self.interval_days,
            "enabled": self.enabled,
        }
