"""
chatroom.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接包装 —— 房间内每条连接的句柄。

除了收发，连接还携带一份“附件”（attachment）：当前会话的快照。
房间休眠后重建时，直接从仍在线的连接附件里恢复会话，不需要重新登录。
"""
from __future__ import annotations

import uuid
from typing import Any

from fastapi import WebSocket


class RoomConnection:
    """一条已接受的 WebSocket 连接。

    Attributes:
        websocket: 底层 FastAPI WebSocket。
        connection_id: 连接唯一标识（用于日志）。
    """

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or f"ws-{uuid.uuid4().hex[:8]}"
        self._attachment: dict[str, Any] | None = None

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)

    def serialize_attachment(self, data: dict[str, Any]) -> None:
        """保存会话快照（复制一份，避免外部修改）。"""
        self._attachment = dict(data)

    def deserialize_attachment(self) -> dict[str, Any] | None:
        return dict(self._attachment) if self._attachment is not None else None

    def __repr__(self) -> str:
        return f"RoomConnection({self.connection_id})"
