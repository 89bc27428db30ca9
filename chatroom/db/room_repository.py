"""
chatroom.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间元数据仓库 —— 保存房间首次登录时绑定的 token 声明。

房间休眠后重建时从这里恢复 ``RoomContext``，结束会话时仍能拿到账务
系统需要的 ``client_id`` / ``advisor_id``。
"""
from __future__ import annotations

from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatroom.core.security import TokenClaims

_COLLECTION_NAME = "room_meta"


class RoomMetaRepository:
    """房间元数据仓库，一个房间一个文档（``_id`` 即 room_id）。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def save_claims(self, room_id: str, claims: TokenClaims) -> None:
        await self._collection.update_one(
            {"_id": room_id},
            {
                "$set": {
                    "claims": claims.model_dump(),
                    "updated_at": datetime.now(timezone.utc),
                },
            },
            upsert=True,
        )

    async def load_claims(self, room_id: str) -> TokenClaims | None:
        doc = await self._collection.find_one({"_id": room_id}, {"claims": 1})
        if not doc or not doc.get("claims"):
            return None
        return TokenClaims.model_validate(doc["claims"])
