"""
Delta build coordinator.

Decides, for each request, between serving a cached delta, starting a build
or reporting that a build is in progress:

    cache  lock  wait   outcome
    hit    -     -      delta returned
    miss   free  no     build started in background, AlreadyBuildingError
    miss   free  yes    build started, request blocks until it ends
    miss   held  no     poll up to the busy budget, then AlreadyBuildingError
    miss   held  yes    poll up to the wait budget, re-check the cache

A build started by this process counts as holding the lock until its task
finishes, and waiting requests block on that task instead of polling.

Devices are expected to retry on AlreadyBuildingError; the build goes on
server side in the meantime.
"""

import logging
from concurrent.futures import Future, TimeoutError as FutureTimeoutError

from .backends import ArtifactBackend
from .builder import BuildExecutor
from .errors import AlreadyBuildingError, BuildError
from .locks import BuildLockManager
from .tasks import BuildTasks
from .validation import DeltaKey, resolve_delta_key, DEFAULT_MAX_REFERENCE_LENGTH

logger = logging.getLogger(__name__)

BUSY_TIMEOUT = 45  # seconds
WAIT_TIMEOUT = 900  # seconds


class DeltaCoordinator:
    """
    Coordinates delta builds for one artifact backend.

    Args:
        backend: Artifact cache and builder
        locks: Build locks of this backend
        executor: Runs the build pipeline
        tasks: Pool running builds detached from requests
        busy_timeout: Polling budget for requests that do not wait
        wait_timeout: Polling budget for requests that wait for the build
    """

    def __init__(
        self,
        backend: ArtifactBackend,
        locks: BuildLockManager,
        executor: BuildExecutor,
        tasks: BuildTasks,
        busy_timeout: float = BUSY_TIMEOUT,
        wait_timeout: float = WAIT_TIMEOUT,
        max_reference_length: int = DEFAULT_MAX_REFERENCE_LENGTH,
    ):
        self.backend = backend
        self.locks = locks
        self.executor = executor
        self.tasks = tasks
        self.busy_timeout = busy_timeout
        self.wait_timeout = wait_timeout
        self.max_reference_length = max_reference_length

    def request(self, src: str, dest: str, wait: bool = False) -> DeltaKey:
        """
        Return the delta for (src, dest) once it exists.

        Returns:
            DeltaKey of an artifact present in the backend

        Raises:
            ValidationError: Malformed references or version mismatch
            AlreadyBuildingError: Build in progress, retry later
            BuildError: Build failed, or a waited-for build produced nothing
        """
        delta = resolve_delta_key(src, dest, self.max_reference_length)
        logger.info(f"Delta requested ({self.backend.name}): src={src} dest={dest} key={delta.key} wait={wait}")

        if self.backend.exists(delta):
            logger.info(f"Delta {delta.key} served from cache")
            return delta

        running = self.tasks.get(self._task_key(delta))
        if running is not None and running.done():
            running = None

        # A build of this process still running keeps the key, whatever the lock file says
        if running is None and not self.locks.is_held(delta.key):
            try:
                self.locks.acquire(delta.key)
            except AlreadyBuildingError:
                logger.info(f"Lost race for {delta.key}, another build started first")
            else:
                return self._start_build(delta, wait)

        if running is not None and wait:
            return self._await_own_build(delta, running)
        return self._await_other_build(delta, wait)

    def _task_key(self, delta: DeltaKey) -> str:
        return f"{self.backend.name}/{delta.key}"

    def _start_build(self, delta: DeltaKey, wait: bool) -> DeltaKey:
        try:
            future = self.tasks.submit(self._task_key(delta), self.executor.run, delta)
        except RuntimeError:
            logger.error(f"Could not schedule build of {delta.key}, build pool is shut down")
            self.locks.release(delta.key)
            raise

        if not wait:
            raise AlreadyBuildingError(delta.key)
        return self._await_own_build(delta, future)

    def _await_own_build(self, delta: DeltaKey, future: Future) -> DeltaKey:
        try:
            future.result(timeout=self.wait_timeout)
        except FutureTimeoutError:
            logger.warning(f"Build of {delta.key} still running after {self.wait_timeout}s")
            raise AlreadyBuildingError(delta.key)
        return delta

    def _await_other_build(self, delta: DeltaKey, wait: bool) -> DeltaKey:
        budget = self.wait_timeout if wait else self.busy_timeout
        logger.info(f"Delta {delta.key} is being built elsewhere, waiting up to {budget}s")

        if self.locks.wait_until_free(delta.key, budget):
            if not wait:
                raise AlreadyBuildingError(delta.key)
            logger.error(f"Timed out waiting for build of {delta.key}: src={delta.src} dest={delta.dest}")
            raise BuildError(f"Timed out waiting for delta {delta.key}", key=delta.key)

        if self.backend.exists(delta):
            return delta

        logger.error(f"Concurrent build of {delta.key} produced no delta: src={delta.src} dest={delta.dest}")
        raise BuildError(f"Failed to build delta {delta.key}", key=delta.key)
