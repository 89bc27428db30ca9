"""
chatroom.services.session
~~~~~~~~~~~~~~~~~~~~~~~~~

连接会话与会话表。

``Session`` 记录一条连接的身份与登录状态；``SessionRegistry`` 是房间独占的
会话表，以连接对象为键。每次会话变化都会把快照写回连接附件，
房间休眠重建时可以用 ``restore()`` 原样恢复。
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from chatroom.core.logging import get_logger
from chatroom.schemas.chat_events import Participant, UserType

logger = get_logger(__name__)


class Identity(BaseModel):
    """登录后绑定到会话上的身份。"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    user_type: UserType
    user_name: str


class Session:
    """单条连接的运行时状态。

    未登录时 ``identity`` 为 ``None``。身份只能绑定一次。

    Attributes:
        connection: 连接句柄。
        identity: 已绑定的身份。
    """

    def __init__(self, connection: Any, identity: Identity | None = None) -> None:
        self.connection = connection
        self.identity = identity

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    def bind(self, identity: Identity) -> None:
        if self.identity is not None:
            raise ValueError("session already authenticated")
        self.identity = identity

    def snapshot(self) -> dict[str, Any]:
        """导出会话快照，字段与客户端协议一致。"""
        if self.identity is None:
            return {
                "userId": "",
                "userType": "client",
                "userName": "Anonymous",
                "authenticated": False,
            }
        return {
            "userId": self.identity.user_id,
            "userType": self.identity.user_type,
            "userName": self.identity.user_name,
            "authenticated": True,
        }

    @classmethod
    def from_snapshot(cls, connection: Any, data: dict[str, Any]) -> Session:
        if not data.get("authenticated"):
            return cls(connection)
        identity = Identity(
            user_id=data["userId"],
            user_type=data["userType"],
            user_name=data["userName"],
        )
        return cls(connection, identity)


class SessionRegistry:
    """房间会话表（仅由所属房间的事件循环访问，无需加锁）。"""

    def __init__(self) -> None:
        self._sessions: dict[Any, Session] = {}

    def register(self, connection: Any) -> Session:
        """为新连接创建未登录会话。同一连接重复注册属于调用方错误。"""
        if connection in self._sessions:
            raise ValueError(f"connection already registered: {connection!r}")
        session = Session(connection)
        self._sessions[connection] = session
        self._persist(session)
        return session

    def get(self, connection: Any) -> Session | None:
        return self._sessions.get(connection)

    def remove(self, connection: Any) -> Session | None:
        return self._sessions.pop(connection, None)

    def authenticate(self, session: Session, identity: Identity) -> None:
        """绑定身份并持久化快照。"""
        session.bind(identity)
        self._persist(session)

    def list_authenticated(self) -> list[Session]:
        """已登录会话，按加入顺序。"""
        return [s for s in self._sessions.values() if s.authenticated]

    def participants(self) -> list[Participant]:
        return [
            Participant(
                user_id=s.identity.user_id,
                user_type=s.identity.user_type,
                user_name=s.identity.user_name,
            )
            for s in self.list_authenticated()
        ]

    def connections(self) -> list[Any]:
        return list(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()

    def restore(self, connections: list[Any]) -> int:
        """从连接附件重建会话表，返回恢复出的已登录会话数。

        没有附件的连接按新连接处理（未登录）。
        """
        restored = 0
        for connection in connections:
            data = connection.deserialize_attachment()
            if data is None:
                self.register(connection)
                continue
            session = Session.from_snapshot(connection, data)
            self._sessions[connection] = session
            if session.authenticated:
                restored += 1
        logger.debug("会话表已恢复 | 连接: %d | 已登录: %d", len(connections), restored)
        return restored

    def _persist(self, session: Session) -> None:
        session.connection.serialize_attachment(session.snapshot())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection: object) -> bool:
        return connection in self._sessions
