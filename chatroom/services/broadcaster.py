"""
chatroom.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播器 —— 只向已登录的会话投递。

各类事件的收件人规则:
  - ``message``   : 全部已登录会话，包括发送者（作为送达确认）
  - ``typing``    : 除发送者外的已登录会话
  - ``presence``  : 除状态变化者外的已登录会话
  - ``chat_ended``: 全部已登录会话

投递是尽力而为的：某条连接发送失败只记日志，不影响其他收件人，
也不向调用方抛出。失效连接由它自己的 close / error 事件清理。
"""
from __future__ import annotations

import asyncio
import json
from typing import Any

from pydantic import BaseModel

from chatroom.core.logging import get_logger
from chatroom.schemas.chat_events import (
    ChatEndedEvent,
    ChatMessage,
    ChatMessageEvent,
    PresenceEvent,
    PresenceStatus,
    TypingEvent,
)
from chatroom.services.session import Identity, Session, SessionRegistry

logger = get_logger(__name__)


def serialize_event(event: BaseModel | dict[str, Any]) -> str:
    if isinstance(event, BaseModel):
        return event.model_dump_json(by_alias=True)
    return json.dumps(event)


class RoomBroadcaster:
    """房间广播器。

    Attributes:
        registry: 所属房间会话表。
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    async def broadcast(self, event: BaseModel | dict[str, Any], exclude: Any = None) -> int:
        """序列化一次，投递给所有已登录会话（``exclude`` 连接除外）。

        Returns:
            成功投递的连接数。
        """
        payload = serialize_event(event)
        recipients = [
            s.connection
            for s in self.registry.list_authenticated()
            if s.connection is not exclude
        ]
        results = await asyncio.gather(
            *(connection.send_text(payload) for connection in recipients),
            return_exceptions=True,
        )
        delivered = 0
        for connection, result in zip(recipients, results):
            if isinstance(result, BaseException):
                logger.warning("广播失败 | conn=%r | %s", connection, result)
            else:
                delivered += 1
        return delivered

    async def send(self, connection: Any, event: BaseModel | dict[str, Any]) -> bool:
        """单播给某条连接（不要求已登录），失败返回 ``False``。"""
        try:
            await connection.send_text(serialize_event(event))
        except Exception as e:
            logger.warning("发送失败 | conn=%r | %s", connection, e)
            return False
        return True

    async def chat_message(self, message: ChatMessage) -> int:
        return await self.broadcast(ChatMessageEvent.from_message(message))

    async def typing(self, sender: Session, is_typing: bool) -> int:
        event = TypingEvent(
            user_id=sender.identity.user_id,
            user_type=sender.identity.user_type,
            is_typing=is_typing,
        )
        return await self.broadcast(event, exclude=sender.connection)

    async def presence(self, identity: Identity, status: PresenceStatus, subject: Any) -> int:
        event = PresenceEvent(
            user_id=identity.user_id,
            user_type=identity.user_type,
            user_name=identity.user_name,
            status=status,
        )
        return await self.broadcast(event, exclude=subject)

    async def chat_ended(self, event: ChatEndedEvent) -> int:
        return await self.broadcast(event)
