"""
Registry access through buildah.

Every command shares one authfile and storage driver. The Registry protocol
lists the operations the build pipeline needs, so tests and alternative
tools can stand in for buildah.
"""

import logging
import os
import threading
from typing import Protocol

from .commands import CommandError, run_command, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

# Media types buildah names when "manifest inspect" hits a plain image
# manifest instead of a manifest list; the image exists in that case.
IMAGE_MANIFEST_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)


class Registry(Protocol):
    """Registry and local image store operations used by the build pipeline."""

    def pull(self, image: str) -> None:
        ...

    def push(self, image: str) -> None:
        ...

    def tag(self, image: str, new_name: str) -> None:
        ...

    def remove(self, *images: str) -> None:
        ...

    def tag_exists(self, image: str) -> bool:
        ...

    def export(self, image: str, archive_path: str) -> None:
        ...

    def bud(self, dockerfile: str, tag: str, context_dir: str) -> None:
        ...


class Buildah:
    """
    Registry implementation backed by the buildah CLI.

    Args:
        auth_dir: Directory for the shared authfile
        registry_host: Registry to log in to; login is skipped when empty
        username: Registry user
        password: Registry password, passed on stdin
        storage_driver: buildah storage driver (vfs works unprivileged)
        timeout: Per-command timeout in seconds
    """

    def __init__(
        self,
        auth_dir: str,
        registry_host: str = "",
        username: str = "",
        password: str = "",
        storage_driver: str = "vfs",
        timeout: float = DEFAULT_TIMEOUT,
        binary: str = "buildah",
    ):
        os.makedirs(auth_dir, exist_ok=True)
        self.authfile = os.path.join(auth_dir, "auth.json")
        self.registry_host = registry_host
        self.username = username
        self._password = password
        self.storage_driver = storage_driver
        self.timeout = timeout
        self.binary = binary
        self._login_lock = threading.Lock()
        self._logged_in = False

    def _run(self, *args: str, description: str, input: str | None = None) -> str:
        cmd = [self.binary, *args]
        return run_command(cmd, description, timeout=self.timeout, input=input)

    @property
    def _auth(self) -> list[str]:
        # buildah rejects an --authfile that does not exist yet
        if os.path.exists(self.authfile):
            return ["--authfile", self.authfile]
        return []

    @property
    def _storage(self) -> list[str]:
        return ["--storage-driver", self.storage_driver]

    def login(self) -> None:
        """Log in once per process; a failed login is retried on the next call."""
        if not self.registry_host or not self.username:
            return
        with self._login_lock:
            if self._logged_in:
                return
            self._run(
                "login", "--authfile", self.authfile, "-u", self.username, "--password-stdin", self.registry_host,
                description=f"buildah login {self.registry_host}",
                input=self._password,
            )
            self._logged_in = True
            logger.info(f"Logged in to registry {self.registry_host} as {self.username}")

    def pull(self, image: str) -> None:
        self.login()
        self._run("pull", *self._auth, *self._storage, "--quiet", image,
                  description=f"buildah pull {image}")

    def push(self, image: str) -> None:
        self.login()
        self._run("push", *self._auth, *self._storage, image,
                  description=f"buildah push {image}")

    def tag(self, image: str, new_name: str) -> None:
        self._run("tag", *self._storage, image, new_name,
                  description=f"buildah tag {new_name}")

    def remove(self, *images: str) -> None:
        if images:
            self._run("rmi", *self._storage, *images,
                      description=f"buildah rmi {' '.join(images)}")

    def export(self, image: str, archive_path: str) -> None:
        """Write a local image to an OCI archive."""
        self._run("push", *self._storage, image, f"oci-archive:{archive_path}",
                  description=f"buildah export {image}")

    def bud(self, dockerfile: str, tag: str, context_dir: str) -> None:
        self.login()
        self._run("bud", *self._auth, *self._storage, "--quiet", "-f", dockerfile, "-t", tag, context_dir,
                  description=f"buildah bud {os.path.basename(dockerfile)}")

    def tag_exists(self, image: str) -> bool:
        """
        Check the registry for a manifest of the given reference.

        buildah only inspects manifest lists; for a plain image it fails with
        an error naming the image manifest media type, which also means the
        tag exists. Any other failure is reported as absent.
        """
        self.login()
        try:
            self._run("manifest", "inspect", *self._auth, image,
                      description=f"buildah manifest inspect {image}")
        except CommandError as e:
            if any(media_type in e.output for media_type in IMAGE_MANIFEST_TYPES):
                return True
            logger.debug(f"No manifest for {image}")
            return False
        return True
