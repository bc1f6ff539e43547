import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import structlog
from pydantic import ValidationError as SchemaError

from services.order_service.events import EventEnvelope
from services.order_service.schemas import OrderSnapshot
from shared.config.settings import REALTIME_AUTH_TIMEOUT_SECONDS, REALTIME_SEND_QUEUE_SIZE
from shared.errors import AuthError, NotOwnerError, OrderNotFoundError, OrderWorkflowError, ValidationError
from shared.observability.metrics import realtime_connections_active
from shared.security.identity import Actor, Role

from .broadcast import RoomRouter
from .channels import order_channel, seed_channels
from .registry import ConnectionRegistry, ConnectionSession
from .schemas import Handshake, ReplyFrame, RpcRequest
from .transport import ConnectionWriter, Transport

logger = structlog.get_logger(__name__)

# Close code sent when the server ends a live connection
NORMAL_CLOSE_CODE = 1000

OrderLookup = Callable[[str], Awaitable[Optional[OrderSnapshot]]]


class SessionValidator(Protocol):
    async def authenticate(self, handshake: Handshake) -> Actor: ...


class RealtimeHub:
    """Connection lifecycle and fan-out for live clients.

    Owns one ConnectionRegistry and the RoomRouter indexing it; the order event
    emitter publishes through `publish`.
    """

    def __init__(
        self,
        validator: SessionValidator,
        auth_timeout: float = REALTIME_AUTH_TIMEOUT_SECONDS,
        queue_size: int = REALTIME_SEND_QUEUE_SIZE,
    ):
        self.validator = validator
        self.auth_timeout = auth_timeout
        self.queue_size = queue_size
        self.registry = ConnectionRegistry()
        self.router = RoomRouter(self.registry)

    async def authenticate(self, handshake: Handshake) -> Actor:
        try:
            return await asyncio.wait_for(self.validator.authenticate(handshake), timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            raise AuthError("Authentication error: handshake timed out") from None

    async def connect(self, handshake: Handshake, transport: Transport) -> str:
        """Authenticates, opens the transport and admits the connection.

        Raises AuthError before anything is registered or opened.
        """
        try:
            actor = await self.authenticate(handshake)
        except AuthError as exc:
            logger.info("realtime_connection_refused", reason=exc.message)
            raise

        await transport.open()
        handle = uuid.uuid4().hex
        writer = ConnectionWriter(handle, transport, maxsize=self.queue_size)
        session = ConnectionSession(handle=handle, actor=actor, writer=writer, channels=set(seed_channels(actor)))
        writer.start()
        self.router.admit(session)
        realtime_connections_active.labels(role=actor.role.value).inc()
        logger.info(
            "realtime_connection_admitted",
            handle=handle,
            identity_id=actor.id,
            role=actor.role.value,
            channels=sorted(session.channels),
        )
        return handle

    async def disconnect(self, handle: str, code: int = NORMAL_CLOSE_CODE) -> None:
        session = self.router.evict(handle)
        if session is None:
            return
        realtime_connections_active.labels(role=session.actor.role.value).dec()
        logger.info("realtime_connection_closed", handle=handle, identity_id=session.actor.id)
        await session.writer.stop()
        try:
            await session.writer.transport.close(code)
        except Exception as exc:
            # The peer may already be gone
            logger.info("realtime_close_failed", handle=handle, error=str(exc))

    def join_order_channel(self, handle: str, order_id: str) -> bool:
        joined = self.router.join(handle, order_channel(order_id))
        if joined:
            logger.info("realtime_channel_joined", handle=handle, channel=order_channel(order_id))
        return joined

    def leave_order_channel(self, handle: str, order_id: str) -> bool:
        left = self.router.leave(handle, order_channel(order_id))
        if left:
            logger.info("realtime_channel_left", handle=handle, channel=order_channel(order_id))
        return left

    def publish(self, channels: Iterable[str], envelope: EventEnvelope) -> int:
        return self.router.publish(channels, envelope)

    def send(self, handle: str, frame: dict) -> bool:
        """Queues a frame for one connection behind anything already queued for it."""
        session = self.registry.get(handle)
        if session is None:
            return False
        return session.writer.offer(frame)

    def session(self, handle: str) -> Optional[ConnectionSession]:
        return self.registry.get(handle)

    def connection_status(self, handle: str) -> dict:
        session = self.registry.get(handle)
        if session is None:
            return {"connected": False}
        return {
            "connected": True,
            "identity_id": session.actor.id,
            "role": session.actor.role.value,
            "channels": sorted(session.channels),
            "connected_users": len(self.registry),
            "server_time": datetime.now(timezone.utc).isoformat(),
        }

    def stats(self, include_connections: bool = False) -> dict:
        counts = self.registry.counts_by_role()
        payload = {
            "total": len(self.registry),
            "approvers": counts.get(Role.APPROVER.value, 0),
            "requesters": counts.get(Role.REQUESTER.value, 0),
            "channels": self.router.channels(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if include_connections:
            payload["connections"] = [session.describe() for session in self.registry]
        return payload

    async def close_all(self) -> None:
        for session in self.registry.sessions():
            await self.disconnect(session.handle)


async def dispatch_rpc(hub: RealtimeHub, handle: str, message: dict, lookup: OrderLookup) -> dict:
    """Runs one client request and builds its reply frame.

    Request-level failures are answered with `ok: false`; they never end the
    connection.
    """
    request_id = message.get("request_id") if isinstance(message, dict) else None
    try:
        request = RpcRequest.model_validate(message)
        data = await _run_action(hub, handle, request, lookup)
    except SchemaError:
        error = {"code": "invalid_frame", "message": "Frames need an 'action' field"}
        return ReplyFrame(request_id=request_id, ok=False, error=error).model_dump(mode="json")
    except OrderWorkflowError as exc:
        return ReplyFrame(request_id=request_id, ok=False, error=exc.to_dict()).model_dump(mode="json")
    return ReplyFrame(request_id=request.request_id, ok=True, data=data).model_dump(mode="json")


async def _run_action(hub: RealtimeHub, handle: str, request: RpcRequest, lookup: OrderLookup):
    if request.action == "ping":
        return "pong"
    if request.action == "get_connection_status":
        return hub.connection_status(handle)
    if request.action in ("join_order", "leave_order"):
        if not request.order_id:
            raise ValidationError("order_id is required")
        if request.action == "leave_order":
            hub.leave_order_channel(handle, request.order_id)
            return {"channel": order_channel(request.order_id), "joined": False}

        session = hub.session(handle)
        order = await lookup(request.order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {request.order_id} not found")
        if session is not None and session.actor.role is Role.REQUESTER and order.owner_id != session.actor.owner_id:
            raise NotOwnerError(f"Order {order.order_number} belongs to another requester")
        # A disconnect during the lookup leaves nothing to join
        hub.join_order_channel(handle, request.order_id)
        return {"channel": order_channel(request.order_id), "joined": handle in hub.registry}
    raise ValidationError(f"Unknown action '{request.action}'")
