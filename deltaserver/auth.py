"""
Bearer token verification for the delta server.

Verification is enforced only when a secret or public key is configured.
Without verification material the server runs in open mode and accepts
every request.
"""

import logging

import jwt

from .errors import AuthError

logger = logging.getLogger(__name__)

# Algorithm families verified with the public key rather than the secret
ASYMMETRIC_PREFIXES = ("RS", "PS", "ES", "EdDSA")


class AuthVerifier:
    """
    Verifies JWT bearer tokens against a single configured algorithm.

    Args:
        algorithm: Accepted signing algorithm, e.g. "HS256" or "RS256"
        secret: HMAC secret
        public_key: PEM encoded public key for asymmetric algorithms
    """

    def __init__(self, algorithm: str = "HS256", secret: str | None = None, public_key: str | None = None):
        self.algorithm = algorithm
        self._secret = secret or None
        self._public_key = public_key or None

    @property
    def enabled(self) -> bool:
        return bool(self._secret or self._public_key)

    @property
    def _key(self) -> str | None:
        if self.algorithm.startswith(ASYMMETRIC_PREFIXES):
            return self._public_key
        return self._secret

    def verify(self, authorization: str | None) -> dict | None:
        """
        Verify the Authorization header of a request.

        Args:
            authorization: Raw header value, expected "Bearer <token>"

        Returns:
            Decoded claims, or None when verification is disabled

        Raises:
            AuthError: Token missing, malformed, expired, signed with another
                algorithm or with the wrong key
        """
        if not self.enabled:
            return None

        if not authorization:
            logger.warning("Request without authorization header")
            raise AuthError("Authorization header must be provided")

        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            logger.warning(f"Malformed authorization header (scheme '{scheme}')")
            raise AuthError("Authorization header must be of the form 'Bearer <token>'")

        key = self._key
        if key is None:
            logger.error(f"No verification key configured for algorithm {self.algorithm}")
            raise AuthError("Token verification is misconfigured")

        try:
            claims = jwt.decode(token, key, algorithms=[self.algorithm])
        except jwt.exceptions.ExpiredSignatureError:
            logger.warning("Rejected expired token")
            raise AuthError("Token has expired")
        except jwt.exceptions.InvalidAlgorithmError:
            logger.warning(f"Rejected token not signed with {self.algorithm}")
            raise AuthError("Invalid token algorithm")
        except jwt.exceptions.PyJWTError as e:
            logger.warning(f"Rejected token: {e}")
            raise AuthError("Invalid token")

        logger.debug(f"Token accepted for subject '{claims.get('sub')}'")
        return claims
