"""Worker pools and background producers.

Two thread pools share one lease table:
- mutations: user operations (create, delete, attach, retry)
- sweep: drift sweeps and key rotation ticks

Background loops run on their own threads and only submit work; they stop
when stop() sets the shared event.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from keymanager import KeyLifecycleManager
from reconciler.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs engine operations on worker pools and drives periodic work.

    Args:
        engine: The reconciliation engine
        keys: The key manager whose tick() runs on the sweep pool
        workers: Mutation pool size
        sweep_workers: Sweep pool size
        sweep_interval: Seconds between drift sweeps
        tick_interval: Seconds between key rotation ticks
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        keys: KeyLifecycleManager,
        workers: int = 4,
        sweep_workers: int = 2,
        sweep_interval: float = 300.0,
        tick_interval: float = 60.0,
    ):
        self.engine = engine
        self.keys = keys
        self.sweep_interval = sweep_interval
        self.tick_interval = tick_interval
        self._mutations = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='bbctl-mutate')
        self._sweeps = ThreadPoolExecutor(max_workers=sweep_workers, thread_name_prefix='bbctl-sweep')
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_settings(cls, engine: ReconciliationEngine, keys: KeyLifecycleManager, settings) -> 'Scheduler':
        """Build from config.Settings."""
        return cls(
            engine,
            keys,
            workers=settings.reconcile.workers,
            sweep_workers=settings.reconcile.sweep_workers,
            sweep_interval=settings.reconcile.sweep_interval,
            tick_interval=settings.keys.tick_interval,
        )

    # -- mutations --------------------------------------------------------------

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run an engine operation on the mutation pool."""
        return self._mutations.submit(fn, *args, **kwargs)

    def create(self, *args, **kwargs) -> Future:
        return self.submit(self.engine.create, *args, **kwargs)

    def delete(self, resource_id: str) -> Future:
        return self.submit(self.engine.delete, resource_id)

    def retry(self, resource_id: str) -> Future:
        return self.submit(self.engine.retry, resource_id)

    # -- periodic work ----------------------------------------------------------

    def sweep_now(self) -> Future:
        return self._sweeps.submit(self.engine.sweep)

    def tick_now(self) -> Future:
        return self._sweeps.submit(self.keys.tick)

    def _loop(self, name: str, interval: float, job: Callable[[], Future]) -> None:
        while not self._stop.is_set():
            future = job()
            try:
                future.result()
            except Exception as e:
                # Keep the producer alive; the next interval retries
                logger.error(f"{name} failed: {e}")
            self._stop.wait(interval)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for name, interval, job in (
            ('drift sweep', self.sweep_interval, self.sweep_now),
            ('key tick', self.tick_interval, self.tick_now),
        ):
            thread = threading.Thread(
                target=self._loop, args=(name, interval, job), name=f'bbctl-{name.replace(" ", "-")}', daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Scheduler started (sweep every {self.sweep_interval:.0f}s, "
                    f"key tick every {self.tick_interval:.0f}s)")

    def stop(self, wait: bool = True, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._mutations.shutdown(wait=wait)
        self._sweeps.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called (or timeout). Returns True if stopped."""
        return self._stop.wait(timeout)
