"""
Maintenance
Background sweepers that expire jobs, sessions, cached links and bad-link flags
"""
from typing import Callable, Dict, List, Optional
import logging
import threading

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Runs a named sweep function every `interval` seconds on a daemon thread"""

    def __init__(self, name: str, sweep: Callable[[], int], interval: float):
        self.name = name
        self.interval = max(0.05, float(interval))
        self._sweep = sweep
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def run_once(self) -> int:
        try:
            removed = int(self._sweep() or 0)
        except Exception:
            logger.exception("Sweeper %s failed", self.name)
            return 0
        self.runs += 1
        if removed:
            logger.debug("Sweeper %s removed %d row(s)", self.name, removed)
        return removed

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def loop():
            while not self._stop.wait(self.interval):
                self.run_once()

        self._thread = threading.Thread(target=loop, name=f"sweep-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class Maintenance:
    """Owns the sweepers for every store"""

    def __init__(self):
        self._sweepers: Dict[str, PeriodicSweeper] = {}

    def add(self, name: str, sweep: Callable[[], int], interval: float) -> PeriodicSweeper:
        sweeper = PeriodicSweeper(name, sweep, interval)
        self._sweepers[name] = sweeper
        return sweeper

    def start(self):
        for sweeper in self._sweepers.values():
            sweeper.start()
        logger.info("Started %d sweeper(s)", len(self._sweepers))

    def stop(self):
        for sweeper in self._sweepers.values():
            sweeper.stop(timeout=1.0)

    def run_all(self) -> Dict[str, int]:
        """Run every sweep once, synchronously."""
        return {name: s.run_once() for name, s in self._sweepers.items()}

    def names(self) -> List[str]:
        return list(self._sweepers)
