import asyncio
from typing import Optional, Protocol

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from shared.observability.metrics import realtime_deliveries_total

logger = structlog.get_logger(__name__)

_CLOSE = object()


class Transport(Protocol):
    async def open(self) -> None: ...

    async def send_json(self, payload: dict) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketTransport:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def open(self) -> None:
        await self.websocket.accept()

    async def send_json(self, payload: dict) -> None:
        await self.websocket.send_json(payload)

    async def close(self, code: int = 1000) -> None:
        if WebSocketState.DISCONNECTED in (self.websocket.client_state, self.websocket.application_state):
            return
        await self.websocket.close(code=code)


class ConnectionWriter:
    """Per-connection outbound queue drained by one task.

    Frames reach the transport in the order they were offered. Offering never
    blocks: when the buffer is full, or the transport has failed, the frame is
    dropped for this connection only.
    """

    def __init__(self, handle: str, transport: Transport, maxsize: int = 256):
        self.handle = handle
        self.transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.alive = True

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump(), name=f"writer-{self.handle}")

    def offer(self, frame: dict) -> bool:
        if not self.alive:
            realtime_deliveries_total.labels(outcome="dropped").inc()
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            realtime_deliveries_total.labels(outcome="dropped").inc()
            logger.warning("realtime_frame_dropped", handle=self.handle, reason="queue_full")
            return False
        realtime_deliveries_total.labels(outcome="queued").inc()
        return True

    async def stop(self, timeout: float = 1.0) -> None:
        self.alive = False
        if self._task is None:
            return
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self._task.cancel()
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            # wait_for has already cancelled the pump
            logger.warning("realtime_writer_stop_timeout", handle=self.handle)

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            try:
                await self.transport.send_json(frame)
            except Exception as exc:
                # The peer is gone; everything still queued for it is discarded
                self.alive = False
                realtime_deliveries_total.labels(outcome="failed").inc()
                logger.info("realtime_send_failed", handle=self.handle, error=str(exc))
                return
