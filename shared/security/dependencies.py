from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from .identity import Actor
from .jwt_handler import verify_access_token

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def actor_from_token(token: str | None) -> Actor | None:
    """Resolves a bearer token into an Actor; None when missing, invalid or expired."""
    if not token:
        return None
    payload = verify_access_token(token)
    if payload is None:
        return None
    return Actor.from_claims(payload)


async def get_current_actor(request: Request, token: str = Depends(oauth2_scheme)) -> Actor:
    """Dependency to validate the JWT and return the acting identity and role."""
    actor = actor_from_token(token)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Store in request state for downstream use (like rate limiting)
    request.state.user_id = actor.id
    return actor
