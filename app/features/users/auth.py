"""
Authentication utilities for identity-provider session tokens.

Tokens are RS256 JWTs issued by the identity provider (Clerk). The "sub"
claim is the provider's user id. When AUTH_JWT_PUBLIC_KEY is configured the
signature is verified against it; otherwise the token is only decoded,
which is acceptable for local development only.
"""
import jwt
from fastapi import HTTPException, status

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)

if not config.AUTH_JWT_PUBLIC_KEY:
    log.warning("AUTH_JWT_PUBLIC_KEY not set, bearer token signatures will NOT be verified")


def verify_jwt_token(token: str) -> dict:
    """
    Verify a session token and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload containing at least "sub"

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        if config.AUTH_JWT_PUBLIC_KEY:
            payload = jwt.decode(
                token,
                config.AUTH_JWT_PUBLIC_KEY,
                algorithms=config.AUTH_JWT_ALGORITHMS,
                options={"require": ["sub", "exp"]},
            )
        else:
            payload = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": True}
            )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def profile_from_claims(payload: dict) -> dict:
    """Email and display name for a first-seen user, taken from token claims."""
    sub = payload["sub"]
    email = payload.get("email") or payload.get("primary_email") or f"{sub}@users.local"
    name = payload.get("name") or " ".join(
        part for part in (payload.get("given_name"), payload.get("family_name")) if part
    )
    return {"email": email, "name": name or email.split("@")[0]}
