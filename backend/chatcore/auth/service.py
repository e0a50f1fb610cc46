"""Bearer token verification.

Tokens are JWTs signed by the marketplace auth service. The user id is
read from the configured claim (``sub`` by default, with ``userId`` and
``id`` as fallbacks); ``role``, ``name``, ``email`` and ``avatar`` are
optional profile claims.
"""
import logging
import time
from enum import Enum
from typing import Optional

import jwt
from pydantic import BaseModel, Field

from chatcore.config import PLACEHOLDER_JWT_SECRET, get_config
from chatcore.errors import AuthError

logger = logging.getLogger(__name__)

_FALLBACK_ID_CLAIMS = ("sub", "userId", "id", "user_id")


class UserRole(str, Enum):
    """Role class of a marketplace user."""
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class AuthenticatedUser(BaseModel):
    """Identity extracted from a verified token.

    Owned by the auth collaborator; the messaging core treats it as read-only.
    """
    id: str = Field(..., min_length=1)
    role: UserRole = UserRole.CUSTOMER
    name: str = ""
    email: str = ""
    avatar: Optional[str] = None

    model_config = {"frozen": True}


class TokenVerifier:
    """Validates bearer tokens against the shared JWT secret."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        user_id_claim: str = "sub",
        leeway_seconds: int = 0,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.user_id_claim = user_id_claim
        self.leeway_seconds = leeway_seconds

    @property
    def configured(self) -> bool:
        """False while the secret is empty or the shipped placeholder."""
        return bool(self.secret_key) and self.secret_key != PLACEHOLDER_JWT_SECRET

    @classmethod
    def from_config(cls) -> "TokenVerifier":
        config = get_config()
        verifier = cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.algorithm,
            user_id_claim=config.auth.user_id_claim,
            leeway_seconds=config.auth.leeway_seconds,
        )
        if not verifier.configured:
            logger.error(
                "jwt.secret_key is not set in marketchat.secrets.yaml; every token will be rejected"
            )
        return verifier

    def verify(self, token: Optional[str]) -> AuthenticatedUser:
        """Verify a token and return the user it identifies.

        Raises:
            AuthError: If the token is missing, malformed, expired, or has
                no user id, or no signing secret is configured.
        """
        if not self.configured:
            raise AuthError("Token signing secret is not configured", code="auth_unconfigured")
        if not token:
            raise AuthError("Authentication token required")

        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                leeway=self.leeway_seconds,
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired", code="token_expired")
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected token: {e}")
            raise AuthError("Invalid authentication token")

        user_id = claims.get(self.user_id_claim)
        if not user_id:
            for claim in _FALLBACK_ID_CLAIMS:
                if claims.get(claim):
                    user_id = claims[claim]
                    break
        if not user_id:
            raise AuthError("Token has no user id")

        try:
            role = UserRole(str(claims.get("role", UserRole.CUSTOMER.value)).lower())
        except ValueError:
            raise AuthError(f"Unknown role: {claims.get('role')}")

        return AuthenticatedUser(
            id=str(user_id),
            role=role,
            name=claims.get("name") or "",
            email=claims.get("email") or "",
            avatar=claims.get("avatar"),
        )

    def issue(
        self,
        user_id: str,
        role: UserRole = UserRole.CUSTOMER,
        *,
        name: str = "",
        email: str = "",
        avatar: Optional[str] = None,
        expires_in_seconds: int = 3600,
    ) -> str:
        """Issue a token for development and tests.

        Production tokens come from the auth service.
        """
        now = int(time.time())
        payload = {
            self.user_id_claim: user_id,
            "role": UserRole(role).value,
            "name": name,
            "email": email,
            "iat": now,
            "exp": now + expires_in_seconds,
        }
        if avatar:
            payload["avatar"] = avatar
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


_verifier: Optional[TokenVerifier] = None


def get_verifier() -> TokenVerifier:
    global _verifier
    if _verifier is None:
        _verifier = TokenVerifier.from_config()
    return _verifier


def set_verifier(verifier: Optional[TokenVerifier]) -> None:
    global _verifier
    _verifier = verifier
