"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替代 MongoDB、WebSocket 和账务系统，
使单元测试可在无网络、无数据库的环境下快速运行。
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
import pytest_asyncio

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from chatroom.core.security import ClaimsVerifier, TokenClaims  # noqa: E402
from chatroom.ledger.client import EndReadingResult, SyncMessageResult  # noqa: E402
from chatroom.schemas.chat_events import ChatMessage  # noqa: E402
from chatroom.services.room import RoomActor  # noqa: E402

TEST_SECRET: str = "test-secret"
TEST_ISSUER: str = "clairvora.com"


# ── 假连接 ────────────────────────────────────────────────────────────

class FakeConnection:
    """记录所有发出帧的假 WebSocket 连接。"""

    def __init__(self, name: str = "conn", fail_sends: bool = False) -> None:
        self.name = name
        self.fail_sends = fail_sends
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None
        self._attachment: dict[str, Any] | None = None

    async def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("broken pipe")
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def serialize_attachment(self, data: dict[str, Any]) -> None:
        self._attachment = dict(data)

    def deserialize_attachment(self) -> dict[str, Any] | None:
        return dict(self._attachment) if self._attachment is not None else None

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        frames = [json.loads(text) for text in self.sent]
        if event_type is None:
            return frames
        return [f for f in frames if f["type"] == event_type]

    def __repr__(self) -> str:
        return f"FakeConnection({self.name})"


# ── 内存仓库 ──────────────────────────────────────────────────────────

class InMemoryChatRepository:
    """``ChatRepository`` 的内存实现，排序规则与 MongoDB 查询一致。"""

    def __init__(self) -> None:
        self.docs: list[tuple[str, ChatMessage]] = []
        self.fail_writes = False

    async def save_message(self, room_id: str, message: ChatMessage) -> None:
        if self.fail_writes:
            raise RuntimeError("write failed")
        self.docs.append((room_id, message))

    async def get_recent(self, room_id: str, limit: int = 100) -> list[ChatMessage]:
        rows = [(i, m) for i, (r, m) in enumerate(self.docs) if r == room_id]
        rows.sort(key=lambda row: (row[1].timestamp, row[0]), reverse=True)
        recent = [m for _, m in rows[:limit]]
        recent.reverse()
        return recent

    async def count_messages(self, room_id: str) -> int:
        return sum(1 for r, _ in self.docs if r == room_id)

    def messages(self, room_id: str) -> list[ChatMessage]:
        return [m for r, m in self.docs if r == room_id]


class InMemoryRoomMetaRepository:
    def __init__(self) -> None:
        self.claims: dict[str, dict[str, Any]] = {}
        self.save_count = 0

    async def save_claims(self, room_id: str, claims: TokenClaims) -> None:
        self.save_count += 1
        self.claims[room_id] = claims.model_dump()

    async def load_claims(self, room_id: str) -> TokenClaims | None:
        data = self.claims.get(room_id)
        return TokenClaims.model_validate(data) if data else None


# ── 凭证 ──────────────────────────────────────────────────────────────

def make_token(
    *,
    sub: str = "client-1",
    reading_id: str = "r1",
    user_type: str = "client",
    user_name: str = "Alice",
    secret: str = TEST_SECRET,
    **extra: Any,
) -> str:
    """签发一个测试用 JWT。"""
    payload: dict[str, Any] = {
        "iss": TEST_ISSUER,
        "sub": sub,
        "iat": int(time.time()),
        "exp": int(time.time()) + 3600,
        "reading_id": reading_id,
        "user_type": user_type,
        "user_name": user_name,
        "client_id": 11,
        "advisor_id": 22,
    }
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm="HS256")


def make_claims(**overrides: Any) -> TokenClaims:
    data: dict[str, Any] = {
        "sub": "client-1",
        "reading_id": "r1",
        "user_type": "client",
        "user_name": "Alice",
        "client_id": "11",
        "advisor_id": "22",
    }
    data.update(overrides)
    return TokenClaims.model_validate(data)


def auth_frame(token: str | None = None, **fields: Any) -> str:
    frame: dict[str, Any] = {"type": "auth", **fields}
    if token is not None:
        frame["token"] = token
    return json.dumps(frame)


async def drain(actor: RoomActor) -> None:
    """等待房间的后台任务（消息同步 / 延迟关闭）全部完成。"""
    while actor.coordinator._tasks:
        await asyncio.gather(*list(actor.coordinator._tasks), return_exceptions=True)


# ── fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def verifier() -> ClaimsVerifier:
    return ClaimsVerifier(TEST_SECRET, TEST_ISSUER)


@pytest.fixture()
def chat_repo() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture()
def meta_repo() -> InMemoryRoomMetaRepository:
    return InMemoryRoomMetaRepository()


@pytest.fixture()
def ledger() -> MagicMock:
    """mock 的账务系统客户端，默认同步成功、结束会话成功。"""
    client = MagicMock()
    client.sync_message = AsyncMock(return_value=SyncMessageResult(success=True))
    client.end_reading = AsyncMock(
        return_value=EndReadingResult.model_validate({
            "success": True,
            "reading_id": "r1",
            "ended_by": "client",
            "reason": "normal",
            "billing": {
                "charged": True,
                "duration_minutes": 12,
                "amount": 35.88,
                "advisor_commission": 17.94,
            },
        }),
    )
    client.aclose = AsyncMock()
    return client


@pytest_asyncio.fixture()
async def actor(chat_repo, meta_repo, ledger, verifier):
    """房间 r1 的 Actor（token 登录，宽限期为 0）。"""
    room = RoomActor(
        "r1",
        repo=chat_repo,
        ledger=ledger,
        verifier=verifier,
        meta_repo=meta_repo,
        grace_seconds=0,
    )
    yield room
    await room.stop()
