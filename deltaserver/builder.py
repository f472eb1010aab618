"""
Delta build executor.

Runs the pull -> compute -> publish pipeline for one delta key. The caller
takes the build lock; the executor keeps it fresh while the pipeline runs
and always gives it back, together with the per-build working directory,
whichever way the pipeline ends.
"""

import logging
import os
import shutil
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

from .backends import ArtifactBackend
from .buildah import Registry
from .commands import CommandError
from .errors import BuildError
from .locks import BuildLockManager
from .validation import DeltaKey

logger = logging.getLogger(__name__)


class BuildExecutor:
    """
    Builds deltas for one artifact backend.

    Args:
        backend: Produces and publishes the artifact
        registry: Used to pull the source and destination images
        locks: Lock manager holding the build locks of this backend
        work_dir: Parent directory of the per-build working directories
    """

    def __init__(self, backend: ArtifactBackend, registry: Registry, locks: BuildLockManager, work_dir: str):
        self.backend = backend
        self.registry = registry
        self.locks = locks
        self.work_dir = work_dir
        os.makedirs(self.work_dir, exist_ok=True)

    def pull(self, delta: DeltaKey) -> None:
        """Pull source and destination concurrently and wait for both."""
        images = [str(delta.src), str(delta.dest)]
        logger.info(f"Pulling {images[0]} and {images[1]}")
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="delta-pull") as pool:
            futures = [pool.submit(self.registry.pull, image) for image in images]
            for future in futures:
                future.result()

    def run(self, delta: DeltaKey) -> str:
        """
        Build and publish the delta. The build lock for delta.key must be held.

        Returns:
            Artifact reference from the backend (delta path or delta key)

        Raises:
            BuildError: If any pipeline step fails
        """
        workdir = os.path.join(self.work_dir, uuid.uuid4().hex)
        context = f"src={delta.src} dest={delta.dest} key={delta.key}"
        started = time.monotonic()
        logger.info(f"Starting {self.backend.name} delta build: {context}")

        try:
            os.makedirs(workdir)
            with self.locks.heartbeat(delta.key):
                self.pull(delta)
                artifact = self.backend.build(delta, workdir)
        except BuildError as e:
            logger.error(f"Delta build failed: {context}: {e}")
            raise
        except (CommandError, OSError) as e:
            logger.error(f"Delta build failed: {context}: {e}")
            raise BuildError(
                f"Failed to build delta {delta.key}",
                src=str(delta.src), dest=str(delta.dest), key=delta.key,
            ) from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            self.locks.release(delta.key)

        logger.info(f"Delta build complete in {time.monotonic() - started:.1f}s: {context}")
        return artifact
