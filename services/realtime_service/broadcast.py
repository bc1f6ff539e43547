from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

import structlog

from services.order_service.events import EventEnvelope
from shared.security.identity import Actor

from .registry import ConnectionRegistry, ConnectionSession

logger = structlog.get_logger(__name__)

CONFIRMATION = "confirmation"
NOTICE = "notice"


def render_frame(envelope: EventEnvelope, recipient: Actor) -> dict:
    """The frame one recipient gets for an envelope.

    Every recipient gets the envelope. The acting identity's own connections get
    the confirmation form; everyone else gets the notice form, which is the one
    clients surface as "someone else changed this".
    """
    form = CONFIRMATION if envelope.actor_id == recipient.id else NOTICE
    return {"type": "order_event", "form": form, "envelope": envelope.model_dump(mode="json")}


class RoomRouter:
    """Channel -> connection index over a ConnectionRegistry, plus fan-out.

    The index is derived data: `rebuild` recreates it from the registry at any
    time. All membership changes go through this class so both stay in step.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._members: Dict[str, Set[str]] = defaultdict(set)

    # --- membership ---

    def admit(self, session: ConnectionSession) -> None:
        self.registry.add(session)
        for channel in session.channels:
            self._members[channel].add(session.handle)

    def evict(self, handle: str) -> Optional[ConnectionSession]:
        """Drops a connection from the registry and from every channel at once."""
        session = self.registry.remove(handle)
        if session is None:
            return None
        for channel in session.channels:
            self._discard(channel, handle)
        return session

    def join(self, handle: str, channel: str) -> bool:
        if not self.registry.join(handle, channel):
            return False
        self._members[channel].add(handle)
        return True

    def leave(self, handle: str, channel: str) -> bool:
        if not self.registry.leave(handle, channel):
            return False
        self._discard(channel, handle)
        return True

    def _discard(self, channel: str, handle: str) -> None:
        members = self._members.get(channel)
        if members is None:
            return
        members.discard(handle)
        if not members:
            del self._members[channel]

    def rebuild(self) -> None:
        self._members = defaultdict(set)
        for session in self.registry:
            for channel in session.channels:
                self._members[channel].add(session.handle)

    # --- lookup ---

    def members(self, channel: str) -> FrozenSet[str]:
        return frozenset(self._members.get(channel, ()))

    def channels(self) -> List[str]:
        return sorted(self._members)

    def resolve(self, channels: Iterable[str]) -> List[ConnectionSession]:
        """Live sessions in any of `channels`, each listed once."""
        seen: Set[str] = set()
        recipients = []
        for channel in channels:
            for handle in sorted(self._members.get(channel, ())):
                if handle in seen:
                    continue
                session = self.registry.get(handle)
                if session is None:
                    continue
                seen.add(handle)
                recipients.append(session)
        return recipients

    # --- fan-out ---

    def publish(self, channels: Iterable[str], envelope: EventEnvelope) -> int:
        """Queues `envelope` for every connection in `channels`; returns how many took it.

        A connection that is gone, full or failing loses this frame without
        affecting the other recipients. An empty channel set is a no-op.
        """
        channels = list(channels)
        delivered = 0
        for session in self.resolve(channels):
            try:
                if session.writer.offer(render_frame(envelope, session.actor)):
                    delivered += 1
            except Exception:
                logger.exception("realtime_delivery_failed", handle=session.handle, kind=envelope.kind.value)
        logger.debug("realtime_published", kind=envelope.kind.value, channels=channels, recipients=delivered)
        return delivered
