"""
chatroom.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口统一应答体。

WebSocket 协议使用 ``chat_events`` 中的事件模型，这里只服务于历史回看、
健康检查之外的 REST 接口以及全局异常处理器。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体: ``{"code": 200, "data": {...}, "msg": "success"}``。

    Attributes:
        code: 业务状态码，200 表示成功，其余沿用 HTTP 状态码含义。
        data: 业务数据，失败时通常为 ``None``。
        msg: 状态描述。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)
