"""
chatroom.db
~~~~~~~~~~~

MongoDB 连接。

``mongo`` 是进程内唯一的 ``MongoConnection``：lifespan 启动时 ``connect()``
拿到数据库句柄交给各个仓库，关闭时 ``close()``。房间 Actor 与 HTTP 接口
只通过仓库访问数据库，不直接触碰连接。
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chatroom.core.logging import get_logger

logger = get_logger(__name__)


def mask_uri(uri: str) -> str:
    """隐藏 URI 中的密码，仅用于日志。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username}:***@{host}"))


class MongoConnection:
    """持有一个 motor 客户端及其默认数据库。

    Attributes:
        db_name: 已连接的数据库名，未连接时为 ``None``。
    """

    def __init__(self, client_factory: Callable[[str], Any] = AsyncIOMotorClient) -> None:
        self._client_factory = client_factory
        self._client: Any = None
        self.db_name: str | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self, uri: str, db_name: str) -> AsyncIOMotorDatabase:
        """创建客户端并 ping 目标库；ping 失败时关闭客户端并抛出原异常。"""
        if self._client is not None:
            return self.database

        client = self._client_factory(uri)
        try:
            await client[db_name].command("ping")
        except Exception as e:
            logger.error("MongoDB 连接失败 | uri=%s | %s", mask_uri(uri), e, exc_info=True)
            client.close()
            raise

        self._client = client
        self.db_name = db_name
        logger.info("MongoDB 已连接 | uri=%s | db=%s", mask_uri(uri), db_name)
        return self.database

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._client is None:
            raise RuntimeError("MongoDB 尚未连接")
        return self._client[self.db_name]

    def close(self) -> None:
        if self._client is None:
            return
        self._client.close()
        self._client = None
        self.db_name = None
        logger.info("MongoDB 连接已关闭")


mongo = MongoConnection()
