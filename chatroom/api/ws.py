"""
chatroom.api.ws
~~~~~~~~~~~~~~~

WebSocket 聊天接口。

提供 ``/chat/{room_id}`` 端点，room_id 即外部系统中的 reading_id。
端点只负责收发：每一帧都转交给房间 Actor 按序处理。
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatroom.core.logging import connection_id_ctx_var, get_logger
from chatroom.services.connection import RoomConnection
from chatroom.services.room_hub import RoomHub

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/chat/{room_id}")
async def websocket_chat_endpoint(websocket: WebSocket, room_id: str) -> None:
    """WebSocket 聊天端点。

    连接建立后先处于未登录状态，第一条有效消息必须是 ``auth``。
    协议详见 ``chatroom.schemas.chat_events``。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_id: 房间唯一标识。
    """
    hub: RoomHub = websocket.app.state.room_hub
    await websocket.accept()

    connection = RoomConnection(websocket)
    token = connection_id_ctx_var.set(connection.connection_id)
    try:
        await hub.get_actor(room_id).open(connection)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                # 文本帧与二进制帧都交给房间解析
                raw: str | bytes = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                # 每帧重新获取 Actor：房间可能在两帧之间休眠后重建
                await hub.get_actor(room_id).receive(connection, raw)
        except WebSocketDisconnect as e:
            await hub.get_actor(room_id).close(connection, e.code, e.reason or "")
        except Exception as e:
            logger.error("WebSocket 异常: %s | room=%s", e, room_id, exc_info=True)
            await hub.get_actor(room_id).error(connection, e)
    finally:
        connection_id_ctx_var.reset(token)
