"""
Periodic background tasks.

A PeriodicTask owns a ticker thread that calls `discover()` every interval
and a worker thread that receives each discovered item through a queue and
passes it to `handle()`. A slow handler therefore never delays the next
scan, and stop() drains already-queued work before returning.
"""
import logging
import queue
import threading
from typing import Any, Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

_STOP = object()


class PeriodicTask(Generic[T]):
    """
    Example:
        >>> task = PeriodicTask("scheduler", 30, scheduler.collect_due, scheduler.dispatch)
        >>> task.start()
        >>> ...
        >>> task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        discover: Callable[[], Iterable[T]],
        handle: Callable[[T], Any],
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.discover = discover
        self.handle = handle
        self._stop = threading.Event()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._tick_loop, name=f"{self.name}-ticker", daemon=True),
            threading.Thread(target=self._work_loop, name=f"{self.name}-worker", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started background task {self.name} (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop scanning, finish queued work, then join both threads."""
        if not self._threads:
            return
        self._stop.set()
        ticker, worker = self._threads
        ticker.join(timeout)
        self._queue.put(_STOP)
        worker.join(timeout)
        self._threads = []
        logger.info(f"Stopped background task {self.name}")

    def tick(self) -> int:
        """Run one discovery pass and enqueue what it found."""
        try:
            items = list(self.discover())
        except Exception:
            logger.exception(f"Discovery failed in background task {self.name}")
            return 0
        for item in items:
            self._queue.put(item)
        if items:
            logger.debug(f"{self.name}: queued {len(items)} item(s)")
        return len(items)

    def _tick_loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.tick()

    def _work_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                self.handle(item)
            except Exception:
                logger.exception(f"Handler failed in background task {self.name}")
