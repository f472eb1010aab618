"""
Artifact backends.

Both API versions share the coordinator; what differs is where a finished
delta lives and how it is produced:

    ImageBackend (v3): delta image pushed to the registry under the delta
        path. The registry is the cache, so hits survive restarts.
    PatchFileBackend (v2): patch file kept in a local store directory and
        streamed to devices by the download endpoint.
"""

import logging
import os
import shutil
import uuid
from typing import Protocol

from .buildah import Registry
from .commands import CommandError
from .delta import DeltaComputer, collect_artifact
from .errors import BuildError, NotFoundError
from .validation import DeltaKey

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


class ArtifactBackend(Protocol):
    name: str

    def exists(self, delta: DeltaKey) -> bool:
        ...

    def build(self, delta: DeltaKey, workdir: str) -> str:
        ...


class ImageBackend:
    """Delta images stored in the registry."""

    name = "image"

    def __init__(self, registry: Registry, computer: DeltaComputer):
        self.registry = registry
        self.computer = computer

    def exists(self, delta: DeltaKey) -> bool:
        """
        Ask the registry for the delta tag.

        Raises:
            BuildError: If the registry cannot be reached (e.g. login fails)
        """
        try:
            found = self.registry.tag_exists(delta.path)
        except CommandError as e:
            logger.error(f"Registry lookup failed: src={delta.src} dest={delta.dest} key={delta.key}: {e}")
            raise BuildError(
                f"Could not look up delta {delta.key}",
                src=str(delta.src), dest=str(delta.dest), key=delta.key,
            ) from e
        logger.debug(f"Registry lookup for {delta.path}: {'hit' if found else 'miss'}")
        return found

    def build(self, delta: DeltaKey, workdir: str) -> str:
        """
        Compute the delta image, then tag and push it under the delta path.

        The local copies are removed afterwards; the registry is the durable store.

        Returns:
            The delta path
        """
        local_tag = collect_artifact(
            self.computer.compute(str(delta.src), str(delta.dest), workdir), delta.key
        )
        tagged = False
        try:
            self.registry.tag(local_tag, delta.path)
            tagged = True
            self.registry.push(delta.path)
        finally:
            images = [local_tag, delta.path] if tagged else [local_tag]
            try:
                self.registry.remove(*images)
            except CommandError as e:
                logger.warning(f"Could not remove local delta image {local_tag}: {e}")

        logger.info(f"Delta image pushed: {delta.path}")
        return delta.path


class PatchFileBackend:
    """Patch files stored as <store_dir>/<key>.delta."""

    name = "patch"

    def __init__(self, store_dir: str, computer: DeltaComputer):
        self.store_dir = store_dir
        self.computer = computer
        os.makedirs(self.store_dir, exist_ok=True)

    def path_for(self, key: str) -> str:
        return os.path.join(self.store_dir, f"{key}.delta")

    def exists(self, delta: DeltaKey) -> bool:
        return os.path.isfile(self.path_for(delta.key))

    def build(self, delta: DeltaKey, workdir: str) -> str:
        """
        Compute the patch and copy it into the store.

        The copy goes through a temporary file in the store directory and is
        renamed into place, so a reader sees either no file or the whole file.

        Returns:
            The delta key
        """
        patch = collect_artifact(
            self.computer.compute(str(delta.src), str(delta.dest), workdir), delta.key
        )
        self.store(delta.key, patch)
        return delta.key

    def store(self, key: str, source_path: str) -> str:
        target = self.path_for(key)
        partial = os.path.join(self.store_dir, f".{uuid.uuid4().hex}.partial")
        try:
            with open(source_path, "rb") as src, open(partial, "wb") as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
            os.replace(partial, target)
        finally:
            if os.path.exists(partial):
                os.remove(partial)
        logger.info(f"Patch stored: {target} ({os.path.getsize(target)} bytes)")
        return target

    def fetch(self, key: str) -> tuple[str, int]:
        """
        Locate a stored patch.

        Returns:
            Tuple of (path, size in bytes)

        Raises:
            NotFoundError: If no patch is stored under the key
        """
        path = self.path_for(key)
        try:
            size = os.path.getsize(path)
        except FileNotFoundError:
            logger.warning(f"Patch not found: {key}")
            raise NotFoundError(f"Delta {key} not found", key=key)
        return path, size
