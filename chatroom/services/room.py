"""
chatroom.services.room
~~~~~~~~~~~~~~~~~~~~~~

房间 Actor —— 一个房间的全部状态与事件处理。

每个 ``RoomActor`` 独占自己的会话表、消息日志、广播器和账务协调器。
所有入站事件（连接建立、消息帧、关闭、错误、延迟关闭）都投递到同一个
事件队列，由单个 worker 协程严格按到达顺序逐个处理，因此房间内的
广播与写日志天然有序，不需要任何锁。

唯一不在队列里执行的是消息同步（后台任务）。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from chatroom.core.clock import now_ms
from chatroom.core.errors import AuthError, ProtocolError
from chatroom.core.logging import get_logger
from chatroom.core.security import ClaimsVerifier
from chatroom.db.chat_repository import ChatRepository
from chatroom.db.room_repository import RoomMetaRepository
from chatroom.ledger.client import LedgerClient
from chatroom.schemas.chat_events import (
    AuthErrorEvent,
    AuthFrame,
    AuthSuccessEvent,
    EndChatFrame,
    ErrorEvent,
    HistoryEvent,
    MessageFrame,
    PingFrame,
    PongEvent,
    TypingFrame,
    parse_frame,
)
from chatroom.services.auth_gate import AuthGate, RoomContext
from chatroom.services.broadcaster import RoomBroadcaster
from chatroom.services.coordinator import DEFAULT_GRACE_SECONDS, LedgerCoordinator
from chatroom.services.message_log import DEFAULT_MAX_LENGTH, MessageLog
from chatroom.services.session import Session, SessionRegistry

logger = get_logger(__name__)

_Handler = Callable[..., Awaitable[Any]]


class RoomActor:
    """单个房间的 Actor。

    Attributes:
        room_id: 房间唯一标识。
        context: 房间上下文（token 声明）。
        registry: 会话表。
        log: 消息日志。
        broadcaster: 广播器。
        gate: 登录关卡。
        coordinator: 账务同步与结束会话协调器。
        last_activity: 最近一次处理事件的时间（``time.monotonic()``）。
    """

    def __init__(
        self,
        room_id: str,
        *,
        repo: ChatRepository,
        ledger: LedgerClient,
        verifier: ClaimsVerifier | None = None,
        allow_anonymous: bool = False,
        meta_repo: RoomMetaRepository | None = None,
        history_limit: int = 100,
        max_length: int = DEFAULT_MAX_LENGTH,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        connections: list[Any] | None = None,
    ) -> None:
        self.room_id = room_id
        self.history_limit = history_limit
        self.context = RoomContext(room_id)
        self.registry = SessionRegistry()
        self.log = MessageLog(repo, room_id, max_length=max_length)
        self.broadcaster = RoomBroadcaster(self.registry)
        self.gate = AuthGate(
            self.context, self.registry, verifier,
            allow_anonymous=allow_anonymous, meta_repo=meta_repo,
        )
        self.coordinator = LedgerCoordinator(
            self.context, ledger, self.broadcaster, self.registry,
            post=self._post, grace_seconds=grace_seconds,
        )
        self._meta_repo = meta_repo
        self._context_loaded = meta_repo is None
        self._mailbox: asyncio.Queue[tuple[_Handler, tuple[Any, ...], asyncio.Future[Any]]] = (
            asyncio.Queue()
        )
        self._worker: asyncio.Task[None] | None = None
        self._busy = False
        self.last_activity = time.monotonic()

        self._frame_handlers: dict[str, Callable[[Session, Any], Awaitable[None]]] = {
            "auth": self._handle_auth,
            "message": self._handle_message,
            "typing": self._handle_typing,
            "end_chat": self._handle_end_chat,
            "ping": self._handle_ping,
        }

        if connections:
            self.registry.restore(connections)

    # ── 对外事件入口（全部经过事件队列） ────────────────────────────────

    async def open(self, connection: Any) -> None:
        """新连接建立。"""
        await self._post(self._on_open, connection)

    async def receive(self, connection: Any, raw: str | bytes) -> None:
        """收到一帧消息。"""
        await self._post(self._on_frame, connection, raw)

    async def close(self, connection: Any, code: int = 1000, reason: str = "") -> None:
        """连接关闭。"""
        await self._post(self._on_close, connection, code, reason)

    async def error(self, connection: Any, exc: BaseException) -> None:
        """连接异常。"""
        await self._post(self._on_error, connection, exc)

    # ── 事件队列 ──────────────────────────────────────────────────────

    async def _post(self, handler: _Handler, *args: Any) -> Any:
        """把事件放入队列并等待其处理完成。

        入队是同步完成的：调用方拿到 Actor 引用后，中间不会让出事件循环。
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait((handler, args, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"room-{self.room_id}")

    async def _run(self) -> None:
        while True:
            handler, args, future = await self._mailbox.get()
            self._busy = True
            try:
                if not self._context_loaded:
                    await self._load_context()
                result = await handler(*args)
            except Exception as e:
                logger.error("房间事件处理异常 | room=%s | %s", self.room_id, e, exc_info=True)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._busy = False
                self.last_activity = time.monotonic()
                self._mailbox.task_done()

    async def _load_context(self) -> None:
        try:
            claims = await self._meta_repo.load_claims(self.room_id)
        except Exception as e:
            logger.warning("房间上下文加载失败 | room=%s | %s", self.room_id, e)
            return
        if claims is not None:
            self.context.bind(claims)
            logger.info("房间上下文已恢复 | room=%s", self.room_id)
        self._context_loaded = True

    # ── 休眠 ──────────────────────────────────────────────────────────

    @property
    def is_idle(self) -> bool:
        """队列为空、没有正在处理的事件、也没有后台任务。"""
        return self._mailbox.empty() and not self._busy and not self.coordinator.has_pending

    @property
    def connections(self) -> list[Any]:
        return self.registry.connections()

    def suspend(self) -> list[Any]:
        """停止 worker 并交出仍在线的连接（会话快照保存在连接附件里）。"""
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        return self.registry.connections()

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def info(self) -> dict[str, Any]:
        """房间摘要信息。"""
        return {
            "room_id": self.room_id,
            "connections": len(self.registry),
            "participants": len(self.registry.list_authenticated()),
            "ended": self.coordinator.ended,
        }

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def _on_open(self, connection: Any) -> None:
        self.registry.register(connection)
        logger.info("连接进入房间 | room=%s | 连接数: %d", self.room_id, len(self.registry))

    async def _on_close(self, connection: Any, code: int, reason: str) -> None:
        session = self.registry.remove(connection)
        if session is not None and session.authenticated:
            await self.broadcaster.presence(session.identity, "offline", subject=connection)
        logger.info(
            "连接离开房间 | room=%s | code=%s | 连接数: %d",
            self.room_id, code, len(self.registry),
        )

    async def _on_error(self, connection: Any, exc: BaseException) -> None:
        logger.error("连接异常 | room=%s | %s", self.room_id, exc)
        session = self.registry.remove(connection)
        if session is not None and session.authenticated:
            await self.broadcaster.presence(session.identity, "offline", subject=connection)

    async def _on_frame(self, connection: Any, raw: str | bytes) -> None:
        session = self.registry.get(connection)
        if session is None:
            await self.broadcaster.send(connection, ErrorEvent(message="No session"))
            return

        try:
            frame = parse_frame(raw)
        except ProtocolError as e:
            await self.broadcaster.send(connection, ErrorEvent(message=str(e)))
            return

        try:
            await self._frame_handlers[frame.type](session, frame)
        except Exception as e:
            logger.error(
                "消息处理异常 | room=%s | type=%s | %s",
                self.room_id, frame.type, e, exc_info=True,
            )
            await self.broadcaster.send(connection, ErrorEvent(message="Internal error"))

    async def _handle_auth(self, session: Session, frame: AuthFrame) -> None:
        connection = session.connection
        try:
            identity = await self.gate.authenticate(session, frame)
        except ProtocolError as e:
            await self.broadcaster.send(connection, ErrorEvent(message=str(e)))
            return
        except AuthError as e:
            logger.warning("登录失败 | room=%s | %s", self.room_id, e.message)
            await self.broadcaster.send(connection, AuthErrorEvent(message=e.message))
            try:
                await connection.close(e.close_code, e.close_reason)
            except Exception as close_exc:
                logger.debug("关闭连接失败 | %s", close_exc)
            return

        await self.broadcaster.send(
            connection,
            AuthSuccessEvent(user_id=identity.user_id, participants=self.registry.participants()),
        )

        try:
            history = await self.log.recent(self.history_limit)
        except Exception as e:
            logger.warning("读取历史消息失败 | room=%s | %s", self.room_id, e, exc_info=True)
            history = []
        await self.broadcaster.send(connection, HistoryEvent(messages=history))

        await self.broadcaster.presence(identity, "online", subject=connection)

    async def _handle_message(self, session: Session, frame: MessageFrame) -> None:
        if not session.authenticated:
            await self.broadcaster.send(session.connection, ErrorEvent(message="Not authenticated"))
            return
        if not frame.content or not frame.content.strip():
            return

        try:
            message = await self.log.accept(session.identity, frame.content)
        except Exception as e:
            logger.error("消息写入失败 | room=%s | %s", self.room_id, e, exc_info=True)
            await self.broadcaster.send(session.connection, ErrorEvent(message="Failed to save message"))
            return

        await self.broadcaster.chat_message(message)
        self.coordinator.sync_accepted(message)

    async def _handle_typing(self, session: Session, frame: TypingFrame) -> None:
        if not session.authenticated:
            return
        await self.broadcaster.typing(session, frame.is_typing)

    async def _handle_end_chat(self, session: Session, frame: EndChatFrame) -> None:
        if not session.authenticated:
            await self.broadcaster.send(session.connection, ErrorEvent(message="Not authenticated"))
            return
        await self.coordinator.end_chat(session, frame.reason)

    async def _handle_ping(self, session: Session, frame: PingFrame) -> None:
        await self.broadcaster.send(session.connection, PongEvent(timestamp=now_ms()))
