from typing import Any, Dict, Optional

from pydantic import BaseModel
from starlette.websockets import WebSocket


class Handshake(BaseModel):
    """Credentials presented when a real-time connection is opened."""

    token: Optional[str] = None
    headers: Dict[str, str] = {}

    @classmethod
    def from_websocket(cls, websocket: WebSocket) -> "Handshake":
        return cls(token=websocket.query_params.get("token"), headers=dict(websocket.headers))

    def bearer_token(self) -> Optional[str]:
        if self.token:
            return self.token
        auth_header = self.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header.split(" ", 1)[1]
        return None


class RpcRequest(BaseModel):
    action: str
    request_id: Optional[str] = None
    order_id: Optional[str] = None


class ReplyFrame(BaseModel):
    type: str = "reply"
    request_id: Optional[str] = None
    ok: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None
