"""Authentication module (bearer tokens).

The messaging core does not issue credentials; it only verifies the JWTs
handed out by the marketplace's auth service.

Services:
    - TokenVerifier: validates a bearer token and extracts the user.
    - get_current_user: FastAPI dependency for REST routes.
"""

from .service import AuthenticatedUser, TokenVerifier, UserRole, get_verifier, set_verifier

__all__ = [
    "AuthenticatedUser",
    "TokenVerifier",
    "UserRole",
    "get_verifier",
    "set_verifier",
]
