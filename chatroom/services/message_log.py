"""
chatroom.services.message_log
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间消息日志 —— 房间对话记录的唯一权威来源。

消息在被接受时一次性完成转义和截断，之后不可变。写入必须先于广播完成；
写入失败则整条消息不被接受。
"""
from __future__ import annotations

import html
import uuid

from chatroom.core.clock import now_ms
from chatroom.db.chat_repository import ChatRepository
from chatroom.schemas.chat_events import ChatMessage
from chatroom.services.session import Identity

DEFAULT_MAX_LENGTH: int = 1000


def sanitize_content(content: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """转义 HTML 特殊字符并截断到 ``max_length``。

    单引号写作 ``&#039;``，与主站存量记录保持一致。

    >>> sanitize_content("<b>it's</b>")
    '&lt;b&gt;it&#039;s&lt;/b&gt;'
    """
    return html.escape(content, quote=True).replace("&#x27;", "&#039;")[:max_length]


class MessageLog:
    """单个房间的消息日志。

    Attributes:
        room_id: 所属房间。
        max_length: 消息内容上限。
    """

    def __init__(
        self,
        repo: ChatRepository,
        room_id: str,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.repo = repo
        self.room_id = room_id
        self.max_length = max_length
        self._last_timestamp = 0

    def _next_timestamp(self) -> int:
        # 墙钟回拨时保持不递减
        self._last_timestamp = max(now_ms(), self._last_timestamp)
        return self._last_timestamp

    async def accept(self, identity: Identity, content: str) -> ChatMessage:
        """把原始文本构造成消息并写入日志。"""
        message = ChatMessage(
            id=str(uuid.uuid4()),
            user_id=identity.user_id,
            user_type=identity.user_type,
            user_name=identity.user_name,
            content=sanitize_content(content, self.max_length),
            timestamp=self._next_timestamp(),
        )
        await self.append(message)
        return message

    async def append(self, message: ChatMessage) -> None:
        await self.repo.save_message(self.room_id, message)

    async def recent(self, limit: int) -> list[ChatMessage]:
        """最近 ``limit`` 条消息，时间正序。"""
        return await self.repo.get_recent(self.room_id, limit=limit)
