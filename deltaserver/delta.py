"""
Delta computation capability.

A DeltaComputer turns a pulled (src, dest) pair into an artifact and reports
what it is doing as a lazy sequence of events. The sequence ends with either
a DeltaResult naming the artifact or a DeltaFailure. The build pipeline only
looks at that terminal event; how the diff is produced stays with the tool.

Computers:
    DeltaimageComputer: delta *image* built with deltaimage and buildah,
        applied on the device by pulling it like any other image
    XdeltaComputer: binary patch between the two images' OCI archives,
        downloaded by the device as a file
"""

import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from typing import Iterator, Protocol

from .buildah import Registry
from .commands import CommandError, run_command, DEFAULT_TIMEOUT
from .errors import BuildError

logger = logging.getLogger(__name__)

# deltaimage emits COPY --from=deltaimage/deltaimage:<version> /opt/...; the
# binary is copied into the build context instead of pulled from Docker Hub
DELTAIMAGE_FROM_RE = re.compile(r"--from=deltaimage/deltaimage:\S+ /opt")


@dataclass(frozen=True)
class DeltaProgress:
    message: str


@dataclass(frozen=True)
class DeltaResult:
    artifact: str


@dataclass(frozen=True)
class DeltaFailure:
    message: str


DeltaEvent = DeltaProgress | DeltaResult | DeltaFailure


class DeltaComputer(Protocol):
    def compute(self, src: str, dest: str, workdir: str) -> Iterator[DeltaEvent]:
        ...


def collect_artifact(events: Iterator[DeltaEvent], key: str) -> str:
    """
    Consume a computer's events and return the artifact it produced.

    Raises:
        BuildError: On a failure event, or if the sequence ends without a result
    """
    for event in events:
        if isinstance(event, DeltaProgress):
            logger.info(f"[{key}] {event.message}")
        elif isinstance(event, DeltaResult):
            logger.info(f"[{key}] delta produced: {event.artifact}")
            return event.artifact
        elif isinstance(event, DeltaFailure):
            logger.error(f"[{key}] delta failed: {event.message}")
            raise BuildError(f"Delta computation failed: {event.message}", key=key)
    raise BuildError("Delta computation ended without a result", key=key)


class DeltaimageComputer:
    """
    Builds a delta image with deltaimage.

    Steps:
        1. deltaimage docker-file diff <src> <dest>  -> Dockerfile.diff
        2. buildah bud Dockerfile.diff               -> diff image
        3. deltaimage docker-file apply <diff image> -> Dockerfile.delta
        4. buildah bud Dockerfile.delta              -> delta image (result)

    The diff image is removed once the delta image exists or the build fails.
    """

    def __init__(self, registry: Registry, deltaimage_bin: str, timeout: float = DEFAULT_TIMEOUT):
        self.registry = registry
        self.deltaimage_bin = deltaimage_bin
        self.timeout = timeout

    def _dockerfile(self, workdir: str, name: str, *args: str) -> str:
        content = run_command(
            [self.deltaimage_bin, "docker-file", *args],
            f"deltaimage docker-file {args[0]}",
            timeout=self.timeout,
        )
        path = os.path.join(workdir, name)
        with open(path, "w") as f:
            f.write(DELTAIMAGE_FROM_RE.sub(".", content) + "\n")
        return path

    def compute(self, src: str, dest: str, workdir: str) -> Iterator[DeltaEvent]:
        build_id = uuid.uuid4().hex
        diff_tag = f"localhost/deltaserver/diff-{build_id}"
        delta_tag = f"localhost/deltaserver/delta-{build_id}"
        diff_built = False

        try:
            shutil.copy2(self.deltaimage_bin, os.path.join(workdir, "deltaimage"))

            yield DeltaProgress("generating diff Dockerfile")
            dockerfile = self._dockerfile(workdir, "Dockerfile.diff", "diff", src, dest)

            yield DeltaProgress("building diff image")
            self.registry.bud(dockerfile, diff_tag, workdir)
            diff_built = True

            yield DeltaProgress("generating delta Dockerfile")
            dockerfile = self._dockerfile(workdir, "Dockerfile.delta", "apply", diff_tag)

            yield DeltaProgress("building delta image")
            self.registry.bud(dockerfile, delta_tag, workdir)
        except (CommandError, OSError) as e:
            yield DeltaFailure(str(e))
            return
        finally:
            if diff_built:
                try:
                    self.registry.remove(diff_tag)
                except CommandError as e:
                    logger.warning(f"Could not remove diff image {diff_tag}: {e}")

        yield DeltaResult(delta_tag)


class XdeltaComputer:
    """
    Builds a binary patch between two images with xdelta3.

    Both images are exported to OCI archives in the working directory; the
    result is the path of the patch file, valid until the directory is removed.
    """

    def __init__(self, registry: Registry, xdelta_bin: str = "xdelta3", timeout: float = DEFAULT_TIMEOUT):
        self.registry = registry
        self.xdelta_bin = xdelta_bin
        self.timeout = timeout

    def compute(self, src: str, dest: str, workdir: str) -> Iterator[DeltaEvent]:
        src_archive = os.path.join(workdir, "src.tar")
        dest_archive = os.path.join(workdir, "dest.tar")
        patch = os.path.join(workdir, "delta.patch")

        try:
            yield DeltaProgress("exporting source image")
            self.registry.export(src, src_archive)

            yield DeltaProgress("exporting destination image")
            self.registry.export(dest, dest_archive)

            yield DeltaProgress("encoding patch")
            run_command(
                [self.xdelta_bin, "-e", "-9", "-f", "-s", src_archive, dest_archive, patch],
                "xdelta3 encode",
                timeout=self.timeout,
            )
        except CommandError as e:
            yield DeltaFailure(str(e))
            return

        yield DeltaResult(patch)
