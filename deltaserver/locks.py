"""
Build lock manager.

A build lock is a file named after the delta key. It exists exactly while a
build for that key is in progress. Creation uses O_CREAT | O_EXCL so that the
existence check and the create are one atomic step; processes sharing the
lock directory on one filesystem therefore never build the same key twice.

Each lock file carries an owner token. Only the manager that created a lock
removes it, so a build finishing late never frees a lock taken over by a
newer build. A running build keeps its lock fresh with heartbeat(); only
locks whose heartbeat stopped (crashed process) go stale.
"""

import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager

from .errors import AlreadyBuildingError

logger = logging.getLogger(__name__)


class BuildLockManager:
    """
    File based mutual exclusion keyed by delta key.

    Args:
        lock_dir: Directory holding the lock files
        poll_interval: Seconds between checks in wait_until_free()
        stale_after: Age in seconds after which a lock without heartbeat is
            considered abandoned by a crashed process; None disables expiry
    """

    def __init__(self, lock_dir: str, poll_interval: float = 1.0, stale_after: float | None = None):
        self.lock_dir = lock_dir
        self.poll_interval = poll_interval
        self.stale_after = stale_after or None
        self._owned: dict[str, str] = {}
        self._owned_lock = threading.Lock()
        os.makedirs(self.lock_dir, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.lock_dir, f"{key}.lock")

    def _is_stale(self, path: str) -> bool:
        if self.stale_after is None:
            return False
        try:
            age = time.time() - os.path.getmtime(path)
        except FileNotFoundError:
            return False
        return age > self.stale_after

    def _read_token(self, path: str) -> str | None:
        try:
            with open(path) as f:
                fields = f.read().split()
        except FileNotFoundError:
            return None
        return fields[2] if len(fields) == 3 else None

    def _token(self, key: str) -> str | None:
        with self._owned_lock:
            return self._owned.get(key)

    def owns(self, key: str) -> bool:
        """True if this manager created the current lock file for key."""
        token = self._token(key)
        return token is not None and token == self._read_token(self._path(key))

    def acquire(self, key: str) -> None:
        """
        Take the lock for a key.

        Raises:
            AlreadyBuildingError: If another build holds the lock
        """
        path = self._path(key)
        token = uuid.uuid4().hex
        for _ in range(2):
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._is_stale(path):
                    logger.warning(f"Removing stale build lock for {key}")
                    try:
                        os.remove(path)
                    except FileNotFoundError:
                        pass
                    continue
                logger.debug(f"Build lock for {key} is held")
                raise AlreadyBuildingError(key)
            try:
                os.write(fd, f"{os.getpid()} {time.time():.3f} {token}\n".encode("utf-8"))
            finally:
                os.close(fd)
            with self._owned_lock:
                self._owned[key] = token
            logger.debug(f"Build lock acquired: {key}")
            return
        raise AlreadyBuildingError(key)

    def release(self, key: str) -> None:
        """
        Remove the lock for a key if this manager owns it.

        Safe to call when it is not held. A lock taken over by another build
        after this one went stale is left in place.
        """
        with self._owned_lock:
            token = self._owned.pop(key, None)
        if token is None:
            return
        path = self._path(key)
        if self._read_token(path) != token:
            logger.warning(f"Build lock for {key} was taken over, leaving it in place")
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        logger.debug(f"Build lock released: {key}")

    def refresh(self, key: str) -> bool:
        """Touch an owned lock so it does not go stale. Returns False if no longer owned."""
        if not self.owns(key):
            return False
        try:
            os.utime(self._path(key))
        except FileNotFoundError:
            return False
        return True

    def is_held(self, key: str) -> bool:
        path = self._path(key)
        return os.path.exists(path) and not self._is_stale(path)

    def wait_until_free(self, key: str, max_seconds: float) -> bool:
        """
        Poll the lock until it is released or the budget runs out.

        Args:
            key: Delta key
            max_seconds: Polling budget in seconds

        Returns:
            True if the lock is still held after the budget, False once free
        """
        deadline = time.monotonic() + max_seconds
        while self.is_held(key):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"Build lock for {key} still held after {max_seconds}s")
                return True
            time.sleep(min(self.poll_interval, remaining))
        return False

    @contextmanager
    def heartbeat(self, key: str, interval: float | None = None):
        """
        Keep an owned lock fresh for the duration of a with block.

        The lock is touched every `interval` seconds (a quarter of
        stale_after by default). Without expiry there is nothing to refresh.
        """
        if self.stale_after is None:
            yield
            return

        interval = interval or self.stale_after / 4
        stop = threading.Event()

        def beat():
            while not stop.wait(interval):
                if not self.refresh(key):
                    logger.warning(f"Lost build lock for {key} during heartbeat")
                    return

        thread = threading.Thread(target=beat, name=f"lock-heartbeat-{key}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join()
