"""
chatroom.ledger.client
~~~~~~~~~~~~~~~~~~~~~~

外部账务系统（Ledger）客户端 —— 主站的计费与消息归档后端。

- ``sync_message()``  → 把房间已接受的消息同步到主站数据库
- ``end_reading()``   → 结束本次咨询并触发计费

所有请求带 ``X-Chat-API-Key`` 头。网络错误、非 2xx 响应统一抛出
``LedgerError``；重试策略由调用方决定（本服务不重试）。
"""
from __future__ import annotations

from typing import Any, Literal, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from chatroom.core.config import settings
from chatroom.core.errors import LedgerError
from chatroom.core.logging import get_logger

logger = get_logger(__name__)

EndedBy = Literal["client", "advisor", "system"]


class _LedgerModel(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class SyncMessageResult(_LedgerModel):
    success: bool = False
    chat_id: int | None = None
    message_id: str | None = None
    duplicate: bool = False
    error: str | None = None


class BillingResult(_LedgerModel):
    charged: bool = False
    duration_minutes: float = 0
    amount: float = 0
    advisor_commission: float = 0


class EndReadingResult(_LedgerModel):
    success: bool = False
    reading_id: str | None = None
    ended_by: str | None = None
    reason: str | None = None
    already_ended: bool = False
    billing: BillingResult | None = None
    error: str | None = None


_ResultT = TypeVar("_ResultT", bound=_LedgerModel)


def _validate(model: type[_ResultT], endpoint: str, data: dict[str, Any]) -> _ResultT:
    """把应答体解析为结果模型，字段不合法时转为 ``LedgerError``。"""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("账务系统应答格式错误 | endpoint=%s | body=%s", endpoint, data)
        raise LedgerError(f"{endpoint}: malformed response") from e


class LedgerClient:
    """账务系统异步客户端，内部复用一个 ``httpx.AsyncClient`` 连接池。"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={
                "X-Chat-API-Key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            raise LedgerError(f"{endpoint}: {e!r}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_error:
            logger.error(
                "账务系统返回错误 | endpoint=%s | status=%d | body=%s",
                endpoint, response.status_code, data,
            )
            raise LedgerError(
                data.get("error") or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return data

    async def sync_message(
        self,
        *,
        reading_id: str,
        client_id: str,
        advisor_id: str,
        user_type: str,
        message: str,
        message_id: str,
        timestamp: int,
    ) -> SyncMessageResult:
        """同步一条消息到主站数据库。"""
        data = await self._post(
            "sync-message.php",
            {
                "reading_id": reading_id,
                "client_id": client_id,
                "advisor_id": advisor_id,
                "user_type": user_type,
                "message": message,
                "message_id": message_id,
                "timestamp": timestamp,
            },
        )
        return _validate(SyncMessageResult, "sync-message.php", data)

    async def end_reading(
        self,
        *,
        reading_id: str,
        ended_by: EndedBy,
        reason: str,
    ) -> EndReadingResult:
        """结束咨询并触发计费。

        主站返回 ``success: false`` 且并非“已结束”时视为拒绝，抛出 ``LedgerError``。
        """
        data = await self._post(
            "end-reading.php",
            {"reading_id": reading_id, "ended_by": ended_by, "reason": reason},
        )
        result = _validate(EndReadingResult, "end-reading.php", data)
        if not result.success and not result.already_ended:
            raise LedgerError(result.error or "end reading rejected")
        return result

    async def aclose(self) -> None:
        """关闭连接池。应在 lifespan shutdown 中调用。"""
        await self._client.aclose()


def create_ledger_client() -> LedgerClient:
    """按全局配置创建账务系统客户端。"""
    return LedgerClient(
        base_url=settings.LEDGER_API_URL,
        api_key=settings.LEDGER_API_KEY,
        timeout=settings.LEDGER_TIMEOUT_SECONDS,
    )
