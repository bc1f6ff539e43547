from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from .dependencies import actor_from_token


def actor_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI.
    Requesters are limited per owner scope, so several logins for one owner
    share a budget. Approvers are limited per identity. Unauthenticated calls
    fall back to the client's IP address.
    """
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        actor = actor_from_token(auth_header.split(" ", 1)[1])
        if actor is not None:
            if actor.owner_id is not None:
                return f"owner:{actor.owner_id}"
            return f"actor:{actor.id}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=actor_or_ip)
