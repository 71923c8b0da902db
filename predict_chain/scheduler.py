"""
Periodic reconciliation scheduler.
"""
import logging
import threading

logger = logging.getLogger(__name__)


class ScanScheduler(threading.Thread):
    """
    Fires a reconciliation scan every `interval` seconds.

    Each scan runs on its own worker thread so a slow scan never delays the
    schedule; the reconciler skips a scan that overlaps a running one.
    """

    def __init__(self, reconciler, interval: float, run_on_start: bool = True):
        super().__init__(name='scan-scheduler', daemon=True)
        self.reconciler = reconciler
        self.interval = interval
        self.run_on_start = run_on_start
        self.running = False
        self.ticks = 0
        self._stop_event = threading.Event()

    def run(self):
        self.running = True
        logger.info(f"Scan scheduler started, interval {self.interval}s")
        if self.run_on_start:
            self._fire()
        while not self._stop_event.wait(self.interval):
            self._fire()
        self.running = False
        logger.info("Scan scheduler stopped")

    def stop(self):
        self._stop_event.set()

    def _fire(self):
        self.ticks += 1
        worker = threading.Thread(target=self._run_scan, name=f'scan-{self.ticks}', daemon=True)
        worker.start()

    def _run_scan(self):
        try:
            self.reconciler.run_scan()
        except Exception as e:
            logger.error(f"Error in reconciliation scan: {e}", exc_info=True)
