"""FastAPI dependencies for authenticated REST routes."""
from typing import Optional

from fastapi import Header, HTTPException

from chatcore.errors import AuthError

from .service import AuthenticatedUser, get_verifier


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    try:
        return get_verifier().verify(extract_bearer(authorization))
    except AuthError as e:
        raise HTTPException(
            status_code=401,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
