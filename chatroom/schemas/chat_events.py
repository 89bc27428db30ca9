"""
chatroom.schemas.chat_events
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

聊天室 WebSocket 协议模型。

每一帧都是一个 JSON 对象，由 ``type`` 字段区分类型。客户端协议字段
使用 camelCase（``userId``、``isTyping`` ...），历史消息沿用存储层的
snake_case 字段。

入站:
  - ``auth``     : 登录（token 或 dev 模式下自报身份）
  - ``message``  : 聊天消息
  - ``typing``   : 正在输入
  - ``end_chat`` : 结束会话并结算
  - ``ping``     : 心跳

出站: ``auth_success`` / ``auth_error`` / ``history`` / ``message`` /
``typing`` / ``presence`` / ``chat_ended`` / ``end_chat_success`` /
``pong`` / ``error``
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from chatroom.core.errors import ProtocolError

UserType = Literal["client", "advisor"]
EndReason = Literal["normal", "timeout", "low_balance", "disconnect"]
PresenceStatus = Literal["online", "offline"]

END_REASONS: tuple[str, ...] = ("normal", "timeout", "low_balance", "disconnect")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        """序列化为发送给客户端的 JSON 文本。"""
        return self.model_dump_json(by_alias=True)


# ── 持久化消息 ────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    """已被房间接受的一条聊天消息（写入后不可变）。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="消息 ID（接受时生成）")
    user_id: str = Field(..., description="发送者 ID")
    user_type: UserType = Field(..., description="发送者身份：client / advisor")
    user_name: str = Field(..., description="发送者显示名")
    content: str = Field(..., description="已转义、已截断的消息文本")
    timestamp: int = Field(..., description="接受时间（毫秒时间戳）")


# ── 入站帧 ────────────────────────────────────────────────────────────

class AuthFrame(_CamelModel):
    type: Literal["auth"]
    token: str | None = None
    user_id: str | None = None
    user_type: str | None = None
    user_name: str | None = None


class MessageFrame(_CamelModel):
    type: Literal["message"]
    content: str | None = None


class TypingFrame(_CamelModel):
    type: Literal["typing"]
    is_typing: bool = False


class EndChatFrame(_CamelModel):
    type: Literal["end_chat"]
    reason: str | None = None


class PingFrame(_CamelModel):
    type: Literal["ping"]


InboundFrame = Annotated[
    Union[AuthFrame, MessageFrame, TypingFrame, EndChatFrame, PingFrame],
    Field(discriminator="type"),
]

_INBOUND_TYPES: frozenset[str] = frozenset({"auth", "message", "typing", "end_chat", "ping"})
_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundFrame)


def parse_frame(raw: str | bytes) -> AuthFrame | MessageFrame | TypingFrame | EndChatFrame | PingFrame:
    """解析一帧入站消息。

    Raises:
        ProtocolError: JSON 不合法、字段类型不对或 ``type`` 未知。
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Invalid message format") from e

    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format")
    frame_type = data.get("type")
    if not isinstance(frame_type, str) or frame_type not in _INBOUND_TYPES:
        raise ProtocolError("Unknown message type")

    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError("Invalid message format") from e


# ── 出站事件 ──────────────────────────────────────────────────────────

class Participant(_CamelModel):
    user_id: str
    user_type: UserType
    user_name: str


class AuthSuccessEvent(_CamelModel):
    type: Literal["auth_success"] = "auth_success"
    user_id: str
    participants: list[Participant]


class AuthErrorEvent(_CamelModel):
    type: Literal["auth_error"] = "auth_error"
    message: str


class HistoryEvent(_CamelModel):
    type: Literal["history"] = "history"
    messages: list[ChatMessage]


class ChatMessageEvent(_CamelModel):
    type: Literal["message"] = "message"
    id: str
    content: str
    user_id: str
    user_type: UserType
    user_name: str
    timestamp: int

    @classmethod
    def from_message(cls, message: ChatMessage) -> ChatMessageEvent:
        return cls(
            id=message.id,
            content=message.content,
            user_id=message.user_id,
            user_type=message.user_type,
            user_name=message.user_name,
            timestamp=message.timestamp,
        )


class TypingEvent(_CamelModel):
    type: Literal["typing"] = "typing"
    user_id: str
    user_type: UserType
    is_typing: bool


class PresenceEvent(_CamelModel):
    type: Literal["presence"] = "presence"
    user_id: str
    user_type: UserType
    user_name: str
    status: PresenceStatus


class ChatEndedEvent(_CamelModel):
    type: Literal["chat_ended"] = "chat_ended"
    ended_by: UserType
    user_name: str
    reason: EndReason
    billing: dict[str, Any] | None = None
    timestamp: int


class PongEvent(_CamelModel):
    type: Literal["pong"] = "pong"
    timestamp: int


class ErrorEvent(_CamelModel):
    type: Literal["error"] = "error"
    message: str


# ── HTTP 接口模型 ─────────────────────────────────────────────────────

class HistoryResponseData(BaseModel):
    """历史消息响应数据。"""

    room_id: str = Field(..., description="房间 ID")
    messages: list[ChatMessage] = Field(..., description="消息列表（时间正序）")
    total: int = Field(..., description="本次返回条数")
