"""
Application context.

Everything that lives for the whole process (registry client, token
verifier, lock managers, build pool, coordinators) is built once here at
startup and handed to the Flask app.
"""

import logging
import os
from dataclasses import dataclass

from .auth import AuthVerifier
from .backends import ImageBackend, PatchFileBackend
from .buildah import Buildah, Registry
from .builder import BuildExecutor
from .config import Config
from .coordinator import DeltaCoordinator
from .delta import DeltaComputer, DeltaimageComputer, XdeltaComputer
from .locks import BuildLockManager
from .tasks import BuildTasks

logger = logging.getLogger(__name__)


@dataclass
class DeltaContext:
    config: Config
    auth: AuthVerifier
    registry: Registry
    tasks: BuildTasks
    images: DeltaCoordinator
    patches: DeltaCoordinator
    patch_store: PatchFileBackend

    def shutdown(self, wait: bool = True) -> None:
        self.tasks.shutdown(wait=wait)


def _coordinator(config, backend, registry, tasks, namespace) -> DeltaCoordinator:
    locks = BuildLockManager(
        os.path.join(config.LOCK_DIR, namespace),
        poll_interval=config.POLL_INTERVAL,
        stale_after=config.LOCK_STALE_AFTER,
    )
    executor = BuildExecutor(backend, registry, locks, config.WORK_DIR)
    return DeltaCoordinator(
        backend,
        locks,
        executor,
        tasks,
        busy_timeout=config.BUSY_TIMEOUT,
        wait_timeout=config.WAIT_TIMEOUT,
        max_reference_length=config.MAX_REFERENCE_LENGTH,
    )


def build_context(
    config: Config,
    registry: Registry | None = None,
    image_computer: DeltaComputer | None = None,
    patch_computer: DeltaComputer | None = None,
) -> DeltaContext:
    """
    Build the application context from configuration.

    The registry and delta computers default to the buildah, deltaimage and
    xdelta3 implementations; tests pass stand-ins.
    """
    if registry is None:
        registry = Buildah(
            auth_dir=config.WORK_DIR,
            registry_host=config.REGISTRY_HOST,
            username=config.REGISTRY_USERNAME,
            password=config.REGISTRY_PASSWORD,
            storage_driver=config.STORAGE_DRIVER,
            timeout=config.COMMAND_TIMEOUT,
        )
    if image_computer is None:
        image_computer = DeltaimageComputer(registry, config.DELTAIMAGE_BIN, timeout=config.COMMAND_TIMEOUT)
    if patch_computer is None:
        patch_computer = XdeltaComputer(registry, timeout=config.COMMAND_TIMEOUT)

    auth = AuthVerifier(
        algorithm=config.JWT_ALGORITHM,
        secret=config.JWT_SECRET,
        public_key=config.JWT_PUBLIC_KEY,
    )
    if auth.enabled:
        logger.info(f"Token verification enabled ({config.JWT_ALGORITHM})")
    else:
        logger.warning("Token verification disabled: no JWT_SECRET or JWT_PUBLIC_KEY configured")

    tasks = BuildTasks(max_workers=config.MAX_CONCURRENT_BUILDS)
    image_backend = ImageBackend(registry, image_computer)
    patch_backend = PatchFileBackend(config.STORE_DIR, patch_computer)

    return DeltaContext(
        config=config,
        auth=auth,
        registry=registry,
        tasks=tasks,
        images=_coordinator(config, image_backend, registry, tasks, "image"),
        patches=_coordinator(config, patch_backend, registry, tasks, "patch"),
        patch_store=patch_backend,
    )
