from .jwt_handler import create_access_token, verify_access_token
from .identity import Actor, Role
from .dependencies import actor_from_token, get_current_actor
from .rate_limiter import limiter, actor_or_ip

__all__ = [
    "create_access_token",
    "verify_access_token",
    "Actor",
    "Role",
    "actor_from_token",
    "get_current_actor",
    "limiter",
    "actor_or_ip"
]
