"""
Scan Worker - Periodic background scans

Calls AutomationService.tick() every scan interval.
Runs in separate thread with graceful shutdown support.
"""

import threading
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from qbt_automations.service import AutomationService

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL = 60.0


class ScanWorker:
    """
    Background worker that runs periodic automation passes

    Each pass scans every instance sequentially, feeds the reannounce
    schedulers and prunes old activity.
    """

    def __init__(self, service: AutomationService, scan_interval: float = DEFAULT_SCAN_INTERVAL):
        """
        Initialize worker

        Args:
            service: Automation service
            scan_interval: Seconds between passes (default: 60)
        """
        self.service = service
        self.scan_interval = scan_interval

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.last_pass_completed: Optional[datetime] = None
        self.passes = 0
        self._wakeup = threading.Event()

        logger.info(f"Scan worker initialized (interval={scan_interval}s)")

    def start(self):
        """Start worker thread and the reannounce schedulers"""
        # Check if truly running (thread exists and is alive)
        if self.running and self.thread and self.thread.is_alive():
            logger.warning("Scan worker already running")
            return

        self.service.start()

        self.running = True
        self._wakeup.clear()
        self.thread = threading.Thread(target=self._run_loop, daemon=False, name="scan-worker")
        self.thread.start()
        logger.info("Scan worker thread started")

    def stop(self, timeout: float = 30.0):
        """
        Stop worker thread gracefully

        Args:
            timeout: Maximum seconds to wait for the current pass to complete
        """
        if not self.running:
            return

        logger.info("Stopping scan worker...")
        self.running = False
        self._wakeup.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)

            if self.thread.is_alive():
                logger.warning(f"Scan worker did not stop within {timeout}s timeout")
            else:
                logger.info("Scan worker stopped gracefully")

        self.service.stop(timeout=timeout)

    def is_alive(self) -> bool:
        """Check if worker thread is alive"""
        return self.thread is not None and self.thread.is_alive()

    def get_status(self) -> Dict[str, Any]:
        """
        Get worker status

        Returns:
            Dictionary with worker status information
        """
        return {
            'running': self.running,
            'thread_alive': self.is_alive(),
            'scan_interval': self.scan_interval,
            'passes': self.passes,
            'last_pass_completed': self.last_pass_completed.isoformat() if self.last_pass_completed else None,
        }

    def run_once(self) -> Dict[int, Optional[Dict[str, int]]]:
        """Run one pass in the calling thread"""
        results = self.service.tick(trigger='scheduled')
        self.passes += 1
        self.last_pass_completed = datetime.now(timezone.utc)
        return results

    def _run_loop(self):
        """Main worker loop - runs in separate thread"""
        logger.info("Scan worker loop started")

        while self.running:
            try:
                results = self.run_once()
                skipped = [str(i) for i, stats in results.items() if stats is None]
                if skipped:
                    logger.info(f"Scan already running for instance(s) {', '.join(skipped)}, skipped")
            except Exception as e:
                logger.error(f"Unexpected error in scan worker loop: {e}", exc_info=True)

            self._wakeup.wait(self.scan_interval)

        logger.info("Scan worker loop exited")

    def __repr__(self) -> str:
        return f"<ScanWorker running={self.running} alive={self.is_alive()}>"
