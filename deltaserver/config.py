"""
Configuration module for the delta server.

Loads all configuration from environment variables with sensible defaults.
"""

import os


class Config:
    """
    Delta server configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    A single instance is created at startup and handed to build_context().
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Server bind address. Default: 0.0.0.0
            FLASK_PORT: Server bind port. Default: 80
            REGISTRY_HOST: Registry that receives delta images. Default: empty
            REGISTRY_USERNAME / REGISTRY_PASSWORD: Registry credentials. Default: empty
            JWT_ALGORITHM: Expected token signing algorithm. Default: HS256
            JWT_SECRET: HMAC secret; enables token verification when set
            JWT_PUBLIC_KEY: PEM public key; enables token verification when set
            BASE_DOMAIN: Domain used to build absolute download URLs. Default: empty
            WORK_DIR: Parent of per-build working directories
            LOCK_DIR: Directory holding build lock files
            STORE_DIR: Directory holding patch-file artifacts
            STORAGE_DRIVER: buildah storage driver. Default: vfs
            DELTAIMAGE_BIN: Path of the deltaimage binary
            COMMAND_TIMEOUT: Timeout for a single external command, seconds. Default: 1800
            BUSY_TIMEOUT: Wait budget of non-blocking requests, seconds. Default: 45
            WAIT_TIMEOUT: Wait budget of blocking requests, seconds. Default: 900
            POLL_INTERVAL: Lock polling interval, seconds. Default: 1
            LOCK_STALE_AFTER: Age after which a lock is considered abandoned,
                seconds; 0 disables expiry. Default: 3600
            MAX_CONCURRENT_BUILDS: Size of the build worker pool. Default: 4
            MAX_REFERENCE_LENGTH: Maximum image reference length. Default: 512
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "80"))
        self.BASE_DOMAIN = os.getenv("BASE_DOMAIN", "")

        # Registry
        self.REGISTRY_HOST = os.getenv("REGISTRY_HOST", "")
        self.REGISTRY_USERNAME = os.getenv("REGISTRY_USERNAME", "")
        self.REGISTRY_PASSWORD = os.getenv("REGISTRY_PASSWORD", "")
        self.STORAGE_DRIVER = os.getenv("STORAGE_DRIVER", "vfs")

        # Token verification
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_PUBLIC_KEY = os.getenv("JWT_PUBLIC_KEY", "")

        # Filesystem layout
        self.WORK_DIR = os.getenv("WORK_DIR", "/tmp/deltaserver/work")
        self.LOCK_DIR = os.getenv("LOCK_DIR", "/tmp/deltaserver/locks")
        self.STORE_DIR = os.getenv("STORE_DIR", "/tmp/deltaserver/store")

        # Delta builds
        self.DELTAIMAGE_BIN = os.getenv("DELTAIMAGE_BIN", "/usr/local/bin/deltaimage")
        self.COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "1800"))  # seconds
        self.MAX_CONCURRENT_BUILDS = int(os.getenv("MAX_CONCURRENT_BUILDS", "4"))

        # Polling budgets
        self.BUSY_TIMEOUT = float(os.getenv("BUSY_TIMEOUT", "45"))  # seconds
        self.WAIT_TIMEOUT = float(os.getenv("WAIT_TIMEOUT", "900"))  # seconds
        self.POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "1"))  # seconds
        self.LOCK_STALE_AFTER = float(os.getenv("LOCK_STALE_AFTER", "3600"))  # seconds

        # Validation limits
        self.MAX_REFERENCE_LENGTH = int(os.getenv("MAX_REFERENCE_LENGTH", "512"))

    @property
    def auth_enabled(self) -> bool:
        """True when token verification material is configured."""
        return bool(self.JWT_SECRET or self.JWT_PUBLIC_KEY)

    def __repr__(self):
        """String representation for logging (credentials omitted)."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"REGISTRY_HOST={self.REGISTRY_HOST}, "
            f"JWT_ALGORITHM={self.JWT_ALGORITHM}, "
            f"AUTH_ENABLED={self.auth_enabled}, "
            f"WORK_DIR={self.WORK_DIR}, "
            f"LOCK_DIR={self.LOCK_DIR}, "
            f"STORE_DIR={self.STORE_DIR}, "
            f"BUSY_TIMEOUT={self.BUSY_TIMEOUT}, "
            f"WAIT_TIMEOUT={self.WAIT_TIMEOUT})"
        )
