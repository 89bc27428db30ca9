"""
chatroom.services.auth_gate
~~~~~~~~~~~~~~~~~~~~~~~~~~~

登录关卡 —— 每条连接的第一条有效消息必须是 ``auth``。

- 带 token 且配置了校验器 → 校验 JWT，检查房间归属
- 无 token 且允许匿名（dev）→ 按客户端自报字段生成身份
- 其余情况 → ``TokenRequiredError``

首次成功的 token 登录会把声明绑定到 ``RoomContext``，
后续的消息同步与结算都使用这份声明里的关联 ID。
"""
from __future__ import annotations

import uuid

from chatroom.core.errors import (
    InvalidTokenError,
    ProtocolError,
    RoomMismatchError,
    TokenRequiredError,
)
from chatroom.core.logging import get_logger
from chatroom.core.security import ClaimsVerifier, TokenClaims
from chatroom.db.room_repository import RoomMetaRepository
from chatroom.schemas.chat_events import AuthFrame
from chatroom.services.session import Identity, Session, SessionRegistry

logger = get_logger(__name__)


class RoomContext:
    """房间上下文：房间 ID 与首次登录绑定的 token 声明。

    Attributes:
        room_id: 房间 ID（即外部系统中的 reading_id）。
        claims: 首次成功 token 登录时的声明，未绑定时为 ``None``。
    """

    def __init__(self, room_id: str, claims: TokenClaims | None = None) -> None:
        self.room_id = room_id
        self.claims = claims

    @property
    def bound(self) -> bool:
        return self.claims is not None

    def bind(self, claims: TokenClaims) -> bool:
        """绑定声明。已绑定时保持不变并返回 ``False``。"""
        if self.claims is not None:
            return False
        self.claims = claims
        return True


class AuthGate:
    """登录关卡。

    Attributes:
        context: 所属房间上下文。
        registry: 所属房间会话表。
        verifier: JWT 校验器，未配置密钥时为 ``None``。
        allow_anonymous: 是否允许无 token 登录。
    """

    def __init__(
        self,
        context: RoomContext,
        registry: SessionRegistry,
        verifier: ClaimsVerifier | None,
        allow_anonymous: bool = False,
        meta_repo: RoomMetaRepository | None = None,
    ) -> None:
        self.context = context
        self.registry = registry
        self.verifier = verifier
        self.allow_anonymous = allow_anonymous
        self.meta_repo = meta_repo

    async def authenticate(self, session: Session, frame: AuthFrame) -> Identity:
        """校验 ``auth`` 消息并把身份绑定到会话上。

        Raises:
            ProtocolError: 会话已登录（重复登录一律拒绝，身份不变）。
            InvalidTokenError: token 无效或过期。
            RoomMismatchError: token 不属于本房间。
            TokenRequiredError: 未提供 token 且不允许匿名。
        """
        if session.authenticated:
            raise ProtocolError("Already authenticated")

        if frame.token and self.verifier is not None:
            claims = self.verifier.verify(frame.token)
            if claims is None:
                raise InvalidTokenError()
            if self.context.room_id and claims.reading_id != self.context.room_id:
                logger.warning(
                    "token 房间不匹配 | room=%s | token_room=%s",
                    self.context.room_id, claims.reading_id,
                )
                raise RoomMismatchError()
            identity = Identity(
                user_id=claims.sub,
                user_type=claims.user_type,
                user_name=claims.user_name,
            )
            if self.context.bind(claims):
                await self._save_claims(claims)
        elif self.allow_anonymous:
            identity = Identity(
                user_id=frame.user_id or str(uuid.uuid4()),
                user_type="advisor" if frame.user_type == "advisor" else "client",
                user_name=frame.user_name or "Anonymous",
            )
        else:
            raise TokenRequiredError()

        self.registry.authenticate(session, identity)
        logger.info(
            "登录成功 | room=%s | user=%s | type=%s",
            self.context.room_id, identity.user_id, identity.user_type,
        )
        return identity

    async def _save_claims(self, claims: TokenClaims) -> None:
        if self.meta_repo is None:
            return
        try:
            await self.meta_repo.save_claims(self.context.room_id, claims)
        except Exception as e:
            # 内存中的上下文已绑定，持久化失败只影响休眠后的恢复
            logger.warning("房间上下文持久化失败: %s", e, exc_info=True)
