"""Bearer token verification.

The real-time core consumes identities, it never issues them in
production: tokens are signed by the marketplace's account service with a
shared HS256 secret. ``create_token`` exists for tests and local tooling.

Claims:
    sub:  user id (required)
    role: ``user`` or ``admin`` (optional, defaults to ``user``)
    exp:  expiry (optional, enforced by python-jose when present)
"""
import logging
import time
from typing import Optional

from jose import JWTError, jwt

from .config import JWTSecrets
from .errors import AuthFailure
from .models import Identity, Role

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


class TokenVerifier:
    """Verifies bearer JWTs and turns them into an ``Identity``."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    @classmethod
    def from_secrets(cls, secrets: JWTSecrets) -> "TokenVerifier":
        return cls(secrets.secret_key, secrets.algorithm)

    def verify(self, token: Optional[str]) -> Identity:
        """Decode a token.

        Raises:
            AuthFailure: If the token is missing, has a bad signature, is
                expired, or carries no subject.
        """
        if not token:
            raise AuthFailure("Missing bearer token")
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info("Rejected token: %s", e)
            raise AuthFailure("Invalid or expired token") from e

        sub = claims.get("sub")
        if not sub:
            raise AuthFailure("Token has no subject")
        role = claims.get("role", Role.USER.value)
        if role not in (Role.USER.value, Role.ADMIN.value):
            raise AuthFailure(f"Unknown role: {role}")
        return Identity(userId=str(sub), role=Role(role))

    def create_token(
        self,
        user_id: str,
        role: Role = Role.USER,
        ttl_seconds: Optional[int] = 3600,
    ) -> str:
        """Sign a token (tests and local development only)."""
        now = int(time.time())
        payload = {"sub": user_id, "role": role.value, "iat": now}
        if ttl_seconds is not None:
            payload["exp"] = now + ttl_seconds
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    if not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None
