# sweeper.py — periodic, single-flight reconciliation sweep
import threading

import structlog

logger = structlog.get_logger(__name__)


class SweepInProgress(Exception):
    pass


class ReconciliationSweeper:
    """Runs ``engine.reconcile_indeterminate`` every ``interval`` seconds.

    Sweeps never overlap: the timer and on-demand callers (API, CLI) share one
    non-blocking lock, and an on-demand call while a sweep runs raises
    SweepInProgress instead of waiting.
    """

    def __init__(self, engine, interval: float = 60.0):
        self.engine = engine
        self.interval = interval
        self.last_summary = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    def run_once(self, now=None) -> dict:
        if not self._lock.acquire(blocking=False):
            raise SweepInProgress("a reconciliation sweep is already running")
        try:
            self.last_summary = self.engine.reconcile_indeterminate(now=now)
            return self.last_summary
        finally:
            self._lock.release()

    def start(self):
        if self.interval <= 0 or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconcile-sweeper", daemon=True)
        self._thread.start()
        logger.info("sweeper_started", interval=self.interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except SweepInProgress:
                logger.info("sweep_skipped_in_progress")
            except Exception:
                # keep the timer alive; the next tick retries
                logger.exception("sweep_failed")
