import json

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
import structlog

from services.order_service.repository import OrderRepository
from shared.config.database import AsyncSessionLocal
from shared.errors import AuthError
from shared.security.dependencies import get_current_actor
from shared.security.identity import Actor

from .schemas import Handshake
from .service import RealtimeHub, dispatch_rpc
from .transport import WebSocketTransport

logger = structlog.get_logger(__name__)

# Close code sent before acceptance when the handshake fails authentication
AUTH_FAILED_CLOSE_CODE = 4401

router = APIRouter()
public_router = APIRouter()

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "realtime", "status": "running"}


async def load_order(order_id: str):
    async with AsyncSessionLocal() as db:
        return await OrderRepository.get(db, order_id)


async def read_request(websocket: WebSocket):
    """Next client request; an empty dict for frames that are not JSON text."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    text = message.get("text")
    if text is None:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {}


@router.get("/status", summary="Live connection counts and channels")
async def realtime_status(request: Request, actor: Actor = Depends(get_current_actor)):
    hub: RealtimeHub = request.app.state.hub
    return hub.stats(include_connections=actor.is_approver)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    hub: RealtimeHub = websocket.app.state.hub
    try:
        handle = await hub.connect(Handshake.from_websocket(websocket), WebSocketTransport(websocket))
    except AuthError:
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    try:
        hub.send(handle, {"type": "connection_status", **hub.connection_status(handle)})
        while True:
            hub.send(handle, await dispatch_rpc(hub, handle, await read_request(websocket), load_order))
    except WebSocketDisconnect as exc:
        logger.info("realtime_peer_disconnected", handle=handle, code=exc.code)
    finally:
        await hub.disconnect(handle)
