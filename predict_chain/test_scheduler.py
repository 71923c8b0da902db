"""
Tests for the periodic scan scheduler.
"""
import threading
import time
import unittest

from predict_chain.scheduler import ScanScheduler


class CountingReconciler:
    def __init__(self, fail=False, delay=0.0):
        self.calls = 0
        self.fail = fail
        self.delay = delay
        self.lock = threading.Lock()

    def run_scan(self):
        with self.lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise RuntimeError("scan blew up")


class TestScanScheduler(unittest.TestCase):
    def _run_for(self, scheduler, seconds):
        scheduler.start()
        time.sleep(seconds)
        scheduler.stop()
        scheduler.join(timeout=2)
        self.assertFalse(scheduler.is_alive())

    def test_fires_periodically(self):
        reconciler = CountingReconciler()
        scheduler = ScanScheduler(reconciler, interval=0.05)
        self._run_for(scheduler, 0.3)
        self.assertGreaterEqual(reconciler.calls, 3)

    def test_no_immediate_run(self):
        reconciler = CountingReconciler()
        scheduler = ScanScheduler(reconciler, interval=10, run_on_start=False)
        self._run_for(scheduler, 0.1)
        self.assertEqual(reconciler.calls, 0)

    def test_failing_scan_keeps_schedule(self):
        reconciler = CountingReconciler(fail=True)
        scheduler = ScanScheduler(reconciler, interval=0.05)
        with self.assertLogs('predict_chain.scheduler', level='ERROR'):
            self._run_for(scheduler, 0.3)
        self.assertGreaterEqual(reconciler.calls, 3)

    def test_slow_scan_does_not_delay_ticks(self):
        reconciler = CountingReconciler(delay=0.5)
        scheduler = ScanScheduler(reconciler, interval=0.05)
        self._run_for(scheduler, 0.3)
        self.assertGreaterEqual(scheduler.ticks, 3)


if __name__ == '__main__':
    unittest.main()
