from shared.errors import AuthError
from shared.security.dependencies import actor_from_token
from shared.security.identity import Actor

from .schemas import Handshake


class JWTSessionValidator:
    """Admits a connection only when its handshake carries a valid bearer token."""

    async def authenticate(self, handshake: Handshake) -> Actor:
        token = handshake.bearer_token()
        if not token:
            raise AuthError("Authentication error: no token provided")
        actor = actor_from_token(token)
        if actor is None:
            raise AuthError("Authentication error: invalid token")
        return actor
