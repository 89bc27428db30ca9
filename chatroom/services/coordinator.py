"""
chatroom.services.coordinator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

账务同步与结束会话协调器。

- ``sync_accepted()``: 把已接受的消息推送到账务系统。后台任务，
  房间不等待其完成；失败只记日志，不重试（本地消息日志是权威记录）。
- ``end_chat()``     : 调用账务系统结束咨询并计费，成功后广播
  ``chat_ended``、单独回执发起方，宽限期后关闭房间内所有连接。
  失败时只回报发起方，房间保持开放，可以重试。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from chatroom.core.clock import now_ms
from chatroom.core.errors import CLOSE_NORMAL, LedgerError
from chatroom.core.logging import get_logger
from chatroom.ledger.client import LedgerClient
from chatroom.schemas.chat_events import (
    END_REASONS,
    ChatEndedEvent,
    ChatMessage,
    ErrorEvent,
)
from chatroom.services.auth_gate import RoomContext
from chatroom.services.broadcaster import RoomBroadcaster
from chatroom.services.session import Session, SessionRegistry

logger = get_logger(__name__)

DEFAULT_GRACE_SECONDS: float = 1.0

# 把一个协程函数投递进房间事件队列执行
PostFn = Callable[[Callable[[], Awaitable[Any]]], Awaitable[Any]]


class LedgerCoordinator:
    """账务同步与结束会话协调器。

    Attributes:
        context: 所属房间上下文。
        ledger: 账务系统客户端。
        ended: 本房间是否已成功结束。
    """

    def __init__(
        self,
        context: RoomContext,
        ledger: LedgerClient,
        broadcaster: RoomBroadcaster,
        registry: SessionRegistry,
        post: PostFn,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self.context = context
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.registry = registry
        self.grace_seconds = grace_seconds
        self.ended = False
        self._post = post
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def has_pending(self) -> bool:
        """是否还有未完成的后台任务（同步或延迟关闭）。"""
        return bool(self._tasks)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── 消息同步 ──────────────────────────────────────────────────────

    def sync_accepted(self, message: ChatMessage) -> asyncio.Task[Any] | None:
        """后台同步一条消息。房间上下文未绑定时跳过。"""
        if not self.context.bound:
            return None
        return self._spawn(self._sync(message))

    async def _sync(self, message: ChatMessage) -> None:
        claims = self.context.claims
        try:
            await self.ledger.sync_message(
                reading_id=self.context.room_id,
                client_id=claims.client_id,
                advisor_id=claims.advisor_id,
                user_type=message.user_type,
                message=message.content,
                message_id=message.id,
                timestamp=message.timestamp,
            )
        except Exception as e:
            logger.error(
                "消息同步失败 | room=%s | message=%s | %s",
                self.context.room_id, message.id, e, exc_info=True,
            )

    # ── 结束会话 ──────────────────────────────────────────────────────

    async def end_chat(self, session: Session, reason: str | None) -> bool:
        """结束会话。成功返回 ``True``。"""
        if not self.context.bound or not session.authenticated:
            await self.broadcaster.send(
                session.connection,
                ErrorEvent(message="Cannot end chat: missing session data"),
            )
            return False

        end_reason = reason if reason in END_REASONS else "normal"
        identity = session.identity

        try:
            result = await self.ledger.end_reading(
                reading_id=self.context.room_id,
                ended_by=identity.user_type,
                reason=end_reason,
            )
        except LedgerError as e:
            logger.error("结束会话失败 | room=%s | %s", self.context.room_id, e, exc_info=True)
            await self.broadcaster.send(
                session.connection,
                ErrorEvent(message="Failed to end chat. Please try again."),
            )
            return False

        if result.already_ended:
            logger.info("账务系统报告会话已结束 | room=%s", self.context.room_id)

        self.ended = True
        billing = result.billing.model_dump() if result.billing else None
        await self.broadcaster.chat_ended(
            ChatEndedEvent(
                ended_by=identity.user_type,
                user_name=identity.user_name,
                reason=end_reason,
                billing=billing,
                timestamp=now_ms(),
            ),
        )
        await self.broadcaster.send(
            session.connection,
            {"type": "end_chat_success", **result.model_dump(mode="json")},
        )
        logger.info(
            "会话已结束 | room=%s | by=%s | reason=%s",
            self.context.room_id, identity.user_type, end_reason,
        )
        self._spawn(self._teardown_later())
        return True

    async def _teardown_later(self) -> None:
        await asyncio.sleep(self.grace_seconds)
        await self._post(self.teardown)

    async def teardown(self) -> None:
        """关闭房间内所有连接并清空会话表。"""
        for connection in self.registry.connections():
            try:
                await connection.close(CLOSE_NORMAL, "Chat session ended")
            except Exception as e:
                logger.debug("关闭连接失败（可能已断开）| conn=%r | %s", connection, e)
        self.registry.clear()
        logger.info("房间连接已全部关闭 | room=%s", self.context.room_id)
