"""
Delta server for container image updates.

Serves differential artifacts between two versions of a container image so
that devices can update by downloading a small delta instead of the full
destination image. Deltas are built on demand, at most once per
(source, destination) pair, and cached for later requests.

Features:
    - Delta images pushed to the registry (API v3)
    - Patch files served from a local store (API v2)
    - One build per delta key across threads and processes (atomic lock files)
    - Builds continue in the background after the request is answered
    - Optional blocking mode (wait=true) with bounded polling
    - Optional JWT bearer token verification
    - Configurable via environment variables

Delta Keys:
    src:  registry.example.com/v2/aaaaaaaaaaaaaaaa1111
    dest: registry.example.com/v2/bbbbbbbb
    key:  bbbbbbbb:delta-aaaaaaaaaaaaaaaa
    path: registry.example.com/v2/bbbbbbbb:delta-aaaaaaaaaaaaaaaa
"""

__version__ = "0.1.0"

from .config import Config
from .errors import (
    DeltaError,
    ValidationError,
    AuthError,
    BuildError,
    NotFoundError,
    AlreadyBuildingError,
)
from .validation import ImageReference, DeltaKey, parse_image_reference, resolve_delta_key
from .auth import AuthVerifier
from .locks import BuildLockManager
from .coordinator import DeltaCoordinator
from .context import DeltaContext, build_context
from .routes import create_app

__all__ = [
    "Config",
    "DeltaError",
    "ValidationError",
    "AuthError",
    "BuildError",
    "NotFoundError",
    "AlreadyBuildingError",
    "ImageReference",
    "DeltaKey",
    "parse_image_reference",
    "resolve_delta_key",
    "AuthVerifier",
    "BuildLockManager",
    "DeltaCoordinator",
    "DeltaContext",
    "build_context",
    "create_app",
]
