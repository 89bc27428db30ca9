"""
chatroom.db.chat_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~

聊天消息持久化仓库 —— 封装 MongoDB ``chat_messages`` 集合的写入与读取。

每条消息一个文档（扁平设计），按 ``room_id`` 分区、按 ``timestamp`` 排序；
同一毫秒内的消息以写入顺序（``_id``）区分先后。
"""
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatroom.core.logging import get_logger
from chatroom.schemas.chat_events import ChatMessage

logger = get_logger(__name__)

_COLLECTION_NAME = "chat_messages"

# 读取时返回的字段（不含 room_id / _id）
_PROJECTION = {
    "_id": 0,
    "id": 1,
    "user_id": 1,
    "user_type": 1,
    "user_name": 1,
    "content": 1,
    "timestamp": 1,
}


class ChatRepository:
    """聊天消息仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index(
            [("room_id", 1), ("timestamp", 1), ("_id", 1)],
            name="idx_room_time",
        )
        await self._collection.create_index("id", name="idx_message_id", unique=True)
        self._indexes_created = True
        logger.debug("chat_messages 索引已就绪")

    async def save_message(self, room_id: str, message: ChatMessage) -> None:
        """写入一条消息，写入失败直接抛出。"""
        await self._ensure_indexes()
        doc = {"room_id": room_id, **message.model_dump()}
        await self._collection.insert_one(doc)

    async def get_recent(self, room_id: str, limit: int = 100) -> list[ChatMessage]:
        """获取指定房间最近 N 条消息（按时间正序）。

        先按时间倒序取最近 N 条，再反转为正序。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"room_id": room_id}, _PROJECTION)
            .sort([("timestamp", -1), ("_id", -1)])
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        docs.reverse()
        return [ChatMessage.model_validate(doc) for doc in docs]

    async def count_messages(self, room_id: str) -> int:
        """获取指定房间的消息总数。"""
        await self._ensure_indexes()
        return await self._collection.count_documents({"room_id": room_id})
