"""
Input validation module for the delta server.

Provides parsing of image references and derivation of delta keys.
"""

import logging
import re
from dataclasses import dataclass

from .errors import ValidationError

logger = logging.getLogger(__name__)

# <registry host>/v<N>/<hex image id>[@sha256:<64 hex>]; the host starts
# alphanumeric so a reference is never read as a buildah option
IMAGE_REFERENCE_RE = re.compile(
    r"^(?P<host>[A-Za-z0-9][^@\s]*)/(?P<version>v[0-9]+)/(?P<base>[0-9a-f]+)"
    r"(?:@(?P<digest>sha256:[0-9a-f]{64}))?$"
)
DELTA_KEY_RE = re.compile(r"^[0-9a-f]+:delta-[0-9a-f]{1,16}$")

# Number of source id characters kept in the delta tag
SOURCE_ID_LENGTH = 16

DEFAULT_MAX_REFERENCE_LENGTH = 512


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference such as registry.example.com/v2/0123abcd@sha256:..."""

    registry_host: str
    version: str
    image_base: str
    digest: str | None = None

    @property
    def repository(self) -> str:
        """Reference without the digest."""
        return f"{self.registry_host}/{self.version}/{self.image_base}"

    def __str__(self):
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return self.repository


@dataclass(frozen=True)
class DeltaKey:
    """
    Canonical identity of the delta between two images.

    Attributes:
        key: "<dest image id>:delta-<first 16 chars of src image id>", used for
            locking, caching and store addressing
        path: key prefixed with the destination registry host and version, i.e.
            the registry reference the delta image is pushed to
        src: Parsed source image
        dest: Parsed destination image
    """

    key: str
    path: str
    src: ImageReference
    dest: ImageReference


def parse_image_reference(
    raw: str, max_length: int = DEFAULT_MAX_REFERENCE_LENGTH
) -> ImageReference:
    """
    Parse an image reference string.

    Args:
        raw: Reference in the form <host>/v<N>/<hex id>[@sha256:<digest>]
        max_length: Upper bound for the reference length

    Returns:
        ImageReference

    Raises:
        ValidationError: If the string does not match the expected structure

    Examples:
        >>> parse_image_reference("registry.local/v2/0123abcd").image_base
        '0123abcd'
        >>> parse_image_reference("registry.local/v2/UPPER")  # Raises ValidationError
    """
    if not raw or len(raw) > max_length:
        logger.warning(f"Invalid image reference length: {len(raw or '')}")
        raise ValidationError(f"Invalid image reference: must be 1-{max_length} characters")

    match = IMAGE_REFERENCE_RE.match(raw)
    if not match:
        logger.warning(f"Invalid image reference format: {raw}")
        raise ValidationError(
            f"Invalid image reference '{raw}': expected <registry>/v<N>/<image id>[@sha256:<digest>]"
        )

    ref = ImageReference(
        registry_host=match.group("host"),
        version=match.group("version"),
        image_base=match.group("base"),
        digest=match.group("digest"),
    )
    logger.debug(f"Image reference parsed: {ref!r}")
    return ref


def resolve_delta_key(
    src: str | ImageReference,
    dest: str | ImageReference,
    max_length: int = DEFAULT_MAX_REFERENCE_LENGTH,
) -> DeltaKey:
    """
    Derive the delta key and delta image path for a (src, dest) pair.

    Args:
        src: Image the device is currently running
        dest: Image the device is updating to

    Returns:
        DeltaKey

    Raises:
        ValidationError: If either reference is malformed or the version
            segments of src and dest differ

    Note:
        Only the first 16 characters of the source image id are kept, so two
        source images sharing that prefix map to the same key.

    Example:
        >>> resolve_delta_key("r.io/v2/aaaaaaaaaaaaaaaa1111", "r.io/v2/bbbbbbbb").key
        'bbbbbbbb:delta-aaaaaaaaaaaaaaaa'
    """
    if not isinstance(src, ImageReference):
        src = parse_image_reference(src, max_length)
    if not isinstance(dest, ImageReference):
        dest = parse_image_reference(dest, max_length)

    if src.version != dest.version:
        logger.warning(f"Version mismatch: src={src} dest={dest}")
        raise ValidationError(
            f"Image versions differ: src is {src.version}, dest is {dest.version}"
        )

    key = f"{dest.image_base}:delta-{src.image_base[:SOURCE_ID_LENGTH]}"
    path = f"{dest.registry_host}/{dest.version}/{key}"
    logger.debug(f"Delta key resolved: {key} ({path})")
    return DeltaKey(key=key, path=path, src=src, dest=dest)


def validate_delta_key(key: str) -> None:
    """
    Validate a delta key received from a client.

    Keys address files in the artifact store, so anything outside the
    "<hex>:delta-<hex>" shape is rejected.

    Raises:
        ValidationError: If the key is malformed
    """
    if not key or not DELTA_KEY_RE.match(key):
        logger.warning(f"Invalid delta key: {key}")
        raise ValidationError("Invalid delta key: expected <image id>:delta-<source id>")

    logger.debug(f"Delta key validated: {key}")
