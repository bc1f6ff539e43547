from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    REQUESTER = "requester"
    APPROVER = "approver"


class Actor(BaseModel):
    """An authenticated identity acting on orders, over HTTP or a live connection."""

    id: str
    role: Role
    owner_id: Optional[str] = None  # requester scope; approvers have none

    class Config:
        frozen = True

    @property
    def is_approver(self) -> bool:
        return self.role is Role.APPROVER

    @classmethod
    def from_claims(cls, payload: dict) -> Optional["Actor"]:
        """Builds an actor from verified token claims, or None if they are unusable."""
        subject = payload.get("sub")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            return None
        if not subject:
            return None
        owner_id = None
        if role is Role.REQUESTER:
            owner_id = str(payload.get("owner_id") or subject)
        return cls(id=str(subject), role=role, owner_id=owner_id)
