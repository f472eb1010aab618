"""
Background build tasks.

Builds are started by a request but must keep running after that request
has been answered. BuildTasks owns a worker pool whose lifetime is the
process, and keeps the futures of running builds keyed by delta key.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Any, Callable

from .errors import DeltaError

logger = logging.getLogger(__name__)


class BuildTasks:
    """Supervised pool of detached build tasks."""

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="delta-build")
        self._tasks: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, key: str, fn: Callable[..., Any], *args: Any) -> Future:
        """
        Run fn(*args) in the background under the given delta key.

        Raises:
            RuntimeError: If the pool has been shut down
        """
        future = self._pool.submit(fn, *args)
        with self._lock:
            self._tasks[key] = future
        future.add_done_callback(partial(self._finished, key))
        logger.info(f"Background build scheduled: {key}")
        return future

    def _finished(self, key: str, future: Future) -> None:
        with self._lock:
            if self._tasks.get(key) is future:
                del self._tasks[key]

        if future.cancelled():
            logger.warning(f"Background build cancelled: {key}")
            return
        exc = future.exception()
        if exc is None:
            logger.info(f"Background build finished: {key}")
        elif isinstance(exc, DeltaError):
            logger.info(f"Background build failed: {key}: {exc}")
        else:
            logger.error(f"Background build crashed: {key}", exc_info=exc)

    def get(self, key: str) -> Future | None:
        with self._lock:
            return self._tasks.get(key)

    def running(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def shutdown(self, wait: bool = True) -> None:
        logger.info(f"Shutting down build pool ({len(self.running())} builds running)")
        self._pool.shutdown(wait=wait)
