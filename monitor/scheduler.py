"""Background scheduler for periodic rule sweeps."""
import logging
import threading
import schedule
import time

logger = logging.getLogger("fleetwatch.scheduler")


class SweepScheduler:
    """Calls engine.sweep() every interval_seconds on a background thread.

    Uses its own ``schedule.Scheduler`` so several engines (tests, the web
    app) never share the module-level job list.
    """

    def __init__(self, engine, interval_seconds=10):
        self.engine = engine
        self.interval = interval_seconds
        self._scheduler = schedule.Scheduler()
        self._thread = None
        self._running = False
        self._callbacks = []
        self._consecutive_failures = 0
        self.runs = 0
        self.failures = 0

    def on_sweep(self, callback):
        """Register callback(report) called after each successful sweep."""
        self._callbacks.append(callback)

    def start(self):
        """Start background sweeping."""
        if self._running:
            return
        self._running = True

        self._scheduler.every(self.interval).seconds.do(self._sweep_job)

        self._thread = threading.Thread(target=self._run_loop, name="sweep", daemon=True)
        self._thread.start()
        logger.info(f"Sweep scheduler started (every {self.interval}s)")

    def stop(self):
        """Stop background sweeping."""
        self._running = False
        self._scheduler.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Sweep scheduler stopped")

    def _run_loop(self):
        while self._running:
            self._scheduler.run_pending()
            time.sleep(min(1, self.interval))

    def _sweep_job(self):
        try:
            report = self.engine.sweep()
            self.runs += 1
            self._consecutive_failures = 0
            for cb in self._callbacks:
                try:
                    cb(report)
                except Exception as e:
                    logger.warning(f"Callback error: {e}")
        except Exception as e:
            self.failures += 1
            self._consecutive_failures += 1
            logger.error(f"Sweep failed ({self._consecutive_failures} consecutive): {e}")
            if self._consecutive_failures >= 5:
                logger.critical("5+ consecutive sweep failures!")
