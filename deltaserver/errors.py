"""
Error taxonomy for the delta server.

Components raise these exceptions; the Flask error handler in routes.py maps
them onto HTTP responses of the form {"success": false, "message": "..."}.
"""


class DeltaError(Exception):
    """Base class for all errors surfaced to API clients."""

    status_code = 500

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(DeltaError):
    """Malformed or mismatched image references, or a bad delta key."""

    status_code = 400


class AuthError(DeltaError):
    """Missing, malformed or invalid bearer token."""

    status_code = 401


class BuildError(DeltaError):
    """A step of the delta build pipeline failed."""

    status_code = 400


class NotFoundError(DeltaError):
    """Requested delta artifact does not exist in the store."""

    status_code = 404


class AlreadyBuildingError(DeltaError):
    """
    A build for the delta key is in progress.

    Mapped to 504 so the device supervisor treats it as retryable.
    """

    status_code = 504

    def __init__(self, key: str, message: str = ""):
        super().__init__(message or f"Delta {key} is being built, retry later", key=key)
        self.key = key
