"""
chatroom.core.errors
~~~~~~~~~~~~~~~~~~~~

聊天室错误体系。

- ``AuthError``     —— 鉴权失败，对连接是终结性的（带关闭码）
- ``ProtocolError`` —— 帧格式错误 / 未知类型，回报给发送方，连接保持
- ``LedgerError``   —— 外部账务系统调用失败
"""
from __future__ import annotations

# WebSocket 关闭码
CLOSE_NORMAL: int = 1000
CLOSE_UNAUTHORIZED: int = 4001
CLOSE_FORBIDDEN: int = 4003


class ChatRoomError(Exception):
    """所有聊天室业务异常的基类。"""


class AuthError(ChatRoomError):
    """鉴权失败。

    Attributes:
        message: 回给客户端的 ``auth_error`` 文案。
        close_code: 关闭连接时使用的 WebSocket 关闭码。
        close_reason: 关闭原因短语。
    """

    message: str = "Authentication failed"
    close_code: int = CLOSE_UNAUTHORIZED
    close_reason: str = "Unauthorized"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidTokenError(AuthError):
    message = "Invalid or expired token"


class RoomMismatchError(AuthError):
    message = "Token not valid for this room"
    close_code = CLOSE_FORBIDDEN
    close_reason = "Forbidden"


class TokenRequiredError(AuthError):
    message = "Token required"


class ProtocolError(ChatRoomError):
    """客户端协议错误，以 ``{"type": "error"}`` 回报，不关闭连接。"""


class LedgerError(ChatRoomError):
    """外部账务系统调用失败（网络错误、非 2xx 或业务拒绝）。

    Attributes:
        status_code: HTTP 状态码，网络层错误时为 ``None``。
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
