from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Set

from shared.security.identity import Actor

from .transport import ConnectionWriter


@dataclass
class ConnectionSession:
    """One admitted, authenticated live connection and the channels it is in."""

    handle: str
    actor: Actor
    writer: ConnectionWriter
    channels: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> dict:
        return {
            "handle": self.handle,
            "identity_id": self.actor.id,
            "role": self.actor.role.value,
            "owner_id": self.actor.owner_id,
            "channels": sorted(self.channels),
            "connected_at": self.connected_at.isoformat(),
        }


class ConnectionRegistry:
    """Owner of the live connection -> channel membership mapping.

    Methods never await, so each one completes without interleaving with any
    other membership change on the event loop.
    """

    def __init__(self):
        self._sessions: Dict[str, ConnectionSession] = {}

    def add(self, session: ConnectionSession) -> None:
        if session.handle in self._sessions:
            raise ValueError(f"Connection {session.handle} is already registered")
        self._sessions[session.handle] = session

    def remove(self, handle: str) -> Optional[ConnectionSession]:
        return self._sessions.pop(handle, None)

    def get(self, handle: str) -> Optional[ConnectionSession]:
        return self._sessions.get(handle)

    def join(self, handle: str, channel: str) -> bool:
        """Adds `channel` to the session; False when unknown or already joined."""
        session = self._sessions.get(handle)
        if session is None or channel in session.channels:
            return False
        session.channels.add(channel)
        return True

    def leave(self, handle: str, channel: str) -> bool:
        session = self._sessions.get(handle)
        if session is None or channel not in session.channels:
            return False
        session.channels.discard(channel)
        return True

    def sessions(self) -> List[ConnectionSession]:
        return list(self._sessions.values())

    def counts_by_role(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for session in self._sessions.values():
            role = session.actor.role.value
            counts[role] = counts.get(role, 0) + 1
        return counts

    def __contains__(self, handle: str) -> bool:
        return handle in self._sessions

    def __iter__(self) -> Iterator[ConnectionSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
