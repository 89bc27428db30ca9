"""
chatroom.services.room_hub
~~~~~~~~~~~~~~~~~~~~~~~~~~

房间中心 —— 全局唯一，按 room_id 管理 ``RoomActor`` 的生命周期。

同一个 room_id 永远路由到同一个 Actor。空闲房间会被休眠：Actor 被释放，
仍在线的连接保留下来；该房间的下一个事件到来时重建 Actor，并从连接
附件恢复会话表、从 ``room_meta`` 恢复房间上下文，无需重新登录。
"""
from __future__ import annotations

import asyncio
import time
from typing import Any

from chatroom.core.logging import get_logger
from chatroom.core.security import ClaimsVerifier
from chatroom.db.chat_repository import ChatRepository
from chatroom.db.room_repository import RoomMetaRepository
from chatroom.ledger.client import LedgerClient
from chatroom.services.coordinator import DEFAULT_GRACE_SECONDS
from chatroom.services.message_log import DEFAULT_MAX_LENGTH
from chatroom.services.room import RoomActor

logger = get_logger(__name__)


class RoomHub:
    """房间中心。

    - ``get_actor(room_id)``       → 获取/创建/唤醒房间 Actor
    - ``hibernate_idle(max_idle)`` → 休眠空闲房间
    - ``list_rooms()``             → 活跃房间摘要
    """

    def __init__(
        self,
        *,
        repo: ChatRepository,
        ledger: LedgerClient,
        verifier: ClaimsVerifier | None = None,
        allow_anonymous: bool = False,
        meta_repo: RoomMetaRepository | None = None,
        history_limit: int = 100,
        max_length: int = DEFAULT_MAX_LENGTH,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self.repo = repo
        self.ledger = ledger
        self.verifier = verifier
        self.allow_anonymous = allow_anonymous
        self.meta_repo = meta_repo
        self.history_limit = history_limit
        self.max_length = max_length
        self.grace_seconds = grace_seconds
        self._actors: dict[str, RoomActor] = {}
        self._dormant: dict[str, list[Any]] = {}

    def get_actor(self, room_id: str) -> RoomActor:
        """获取房间 Actor（不存在则创建，休眠中则唤醒）。"""
        actor = self._actors.get(room_id)
        if actor is None:
            connections = self._dormant.pop(room_id, None)
            actor = RoomActor(
                room_id,
                repo=self.repo,
                ledger=self.ledger,
                verifier=self.verifier,
                allow_anonymous=self.allow_anonymous,
                meta_repo=self.meta_repo,
                history_limit=self.history_limit,
                max_length=self.max_length,
                grace_seconds=self.grace_seconds,
                connections=connections,
            )
            self._actors[room_id] = actor
            if connections:
                logger.info("房间已唤醒 | room=%s | 恢复连接: %d", room_id, len(connections))
            else:
                logger.info("房间已创建 | room=%s", room_id)
        return actor

    def hibernate_idle(self, max_idle_seconds: float) -> list[str]:
        """休眠空闲超过 ``max_idle_seconds`` 的房间，返回被休眠的 room_id。

        没有任何连接的房间直接释放。
        """
        now = time.monotonic()
        hibernated: list[str] = []
        for room_id, actor in list(self._actors.items()):
            if not actor.is_idle or now - actor.last_activity < max_idle_seconds:
                continue
            connections = actor.suspend()
            del self._actors[room_id]
            if connections:
                self._dormant[room_id] = connections
            hibernated.append(room_id)
            logger.info("房间已休眠 | room=%s | 保留连接: %d", room_id, len(connections))
        return hibernated

    async def run_sweeper(self, interval_seconds: float, max_idle_seconds: float) -> None:
        """周期性休眠空闲房间，直到被取消。"""
        while True:
            await asyncio.sleep(interval_seconds)
            self.hibernate_idle(max_idle_seconds)

    def is_dormant(self, room_id: str) -> bool:
        return room_id in self._dormant

    def list_rooms(self) -> list[dict[str, Any]]:
        """列出所有活跃房间的摘要信息。"""
        return [actor.info() for actor in self._actors.values()]

    async def shutdown(self) -> None:
        for actor in self._actors.values():
            await actor.stop()
        self._actors.clear()
        self._dormant.clear()
