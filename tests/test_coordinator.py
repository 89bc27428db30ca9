"""
tests.test_coordinator
~~~~~~~~~~~~~~~~~~~~~~

LedgerCoordinator：后台消息同步与结束会话流程。
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatroom.core.errors import CLOSE_NORMAL, LedgerError
from chatroom.ledger.client import EndReadingResult
from chatroom.schemas.chat_events import ChatMessage
from chatroom.services.auth_gate import RoomContext
from chatroom.services.broadcaster import RoomBroadcaster
from chatroom.services.coordinator import LedgerCoordinator
from chatroom.services.session import Identity, SessionRegistry
from tests.conftest import FakeConnection, make_claims

ALICE = Identity(user_id="c1", user_type="client", user_name="Alice")
BOB = Identity(user_id="a1", user_type="advisor", user_name="Bob")

MESSAGE = ChatMessage(
    id="m1", user_id="c1", user_type="client", user_name="Alice", content="hi", timestamp=1234,
)


async def run_now(handler):
    """直接执行投递的事件（测试中没有房间事件队列）。"""
    return await handler()


class Room:
    """组装一个带两名已登录参与者的协调器。"""

    def __init__(self, ledger, bound: bool = True) -> None:
        self.context = RoomContext("r1", make_claims() if bound else None)
        self.registry = SessionRegistry()
        self.alice, self.bob = FakeConnection("alice"), FakeConnection("bob")
        self.registry.authenticate(self.registry.register(self.alice), ALICE)
        self.registry.authenticate(self.registry.register(self.bob), BOB)
        self.coordinator = LedgerCoordinator(
            self.context, ledger, RoomBroadcaster(self.registry), self.registry,
            post=run_now, grace_seconds=0,
        )

    async def drain(self) -> None:
        while self.coordinator._tasks:
            await asyncio.gather(*list(self.coordinator._tasks), return_exceptions=True)


class TestSyncAccepted:
    """测试后台消息同步。"""

    @pytest.mark.asyncio
    async def test_pushes_message_with_correlation_ids(self, ledger) -> None:
        room = Room(ledger)

        task = room.coordinator.sync_accepted(MESSAGE)
        await task

        ledger.sync_message.assert_awaited_once_with(
            reading_id="r1",
            client_id="11",
            advisor_id="22",
            user_type="client",
            message="hi",
            message_id="m1",
            timestamp=1234,
        )

    @pytest.mark.asyncio
    async def test_skipped_without_bound_context(self, ledger) -> None:
        room = Room(ledger, bound=False)

        assert room.coordinator.sync_accepted(MESSAGE) is None
        ledger.sync_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_is_absorbed(self, ledger) -> None:
        ledger.sync_message = AsyncMock(side_effect=LedgerError("HTTP 500", status_code=500))
        room = Room(ledger)

        await room.coordinator.sync_accepted(MESSAGE)

        ledger.sync_message.assert_awaited_once()
        assert room.alice.sent == []
        assert room.bob.sent == []


class TestEndChat:
    """测试结束会话。"""

    @pytest.mark.asyncio
    async def test_success_broadcasts_confirms_and_closes(self, ledger) -> None:
        room = Room(ledger)

        ok = await room.coordinator.end_chat(room.registry.get(room.alice), "normal")
        await room.drain()

        assert ok is True
        ledger.end_reading.assert_awaited_once_with(reading_id="r1", ended_by="client", reason="normal")
        for conn in (room.alice, room.bob):
            ended = conn.events("chat_ended")
            assert len(ended) == 1
            assert ended[0]["reason"] == "normal"
            assert ended[0]["endedBy"] == "client"
            assert ended[0]["userName"] == "Alice"
            assert ended[0]["billing"]["amount"] == 35.88
            assert conn.closed == (CLOSE_NORMAL, "Chat session ended")
        assert len(room.alice.events("end_chat_success")) == 1
        assert room.bob.events("end_chat_success") == []
        assert len(room.registry) == 0
        assert room.coordinator.ended is True

    @pytest.mark.asyncio
    async def test_unknown_reason_falls_back_to_normal(self, ledger) -> None:
        room = Room(ledger)

        await room.coordinator.end_chat(room.registry.get(room.bob), "bored")
        await room.drain()

        ledger.end_reading.assert_awaited_once_with(reading_id="r1", ended_by="advisor", reason="normal")

    @pytest.mark.asyncio
    async def test_without_bound_context_no_external_call(self, ledger) -> None:
        room = Room(ledger, bound=False)

        ok = await room.coordinator.end_chat(room.registry.get(room.alice), "normal")

        assert ok is False
        ledger.end_reading.assert_not_called()
        assert room.alice.events("error")[0]["message"] == "Cannot end chat: missing session data"
        assert room.bob.sent == []

    @pytest.mark.asyncio
    async def test_ledger_failure_keeps_room_open(self, ledger) -> None:
        ledger.end_reading = AsyncMock(side_effect=LedgerError("HTTP 502", status_code=502))
        room = Room(ledger)

        ok = await room.coordinator.end_chat(room.registry.get(room.alice), "normal")
        await room.drain()

        assert ok is False
        assert room.alice.events("error")[0]["message"] == "Failed to end chat. Please try again."
        assert room.bob.sent == []
        assert room.alice.closed is None
        assert room.bob.closed is None
        assert len(room.registry) == 2
        assert room.coordinator.ended is False

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, ledger) -> None:
        success = ledger.end_reading.return_value
        ledger.end_reading = AsyncMock(side_effect=[LedgerError("timeout"), success])
        room = Room(ledger)
        alice = room.registry.get(room.alice)

        assert await room.coordinator.end_chat(alice, "normal") is False
        assert await room.coordinator.end_chat(alice, "normal") is True
        await room.drain()

        assert room.alice.closed == (CLOSE_NORMAL, "Chat session ended")

    @pytest.mark.asyncio
    async def test_already_ended_is_success_with_flag(self, ledger) -> None:
        ledger.end_reading = AsyncMock(
            return_value=EndReadingResult(success=False, reading_id="r1", already_ended=True),
        )
        room = Room(ledger)

        ok = await room.coordinator.end_chat(room.registry.get(room.alice), "timeout")
        await room.drain()

        assert ok is True
        confirmation = room.alice.events("end_chat_success")[0]
        assert confirmation["already_ended"] is True
        assert room.bob.events("chat_ended")[0]["billing"] is None
        assert room.bob.closed == (CLOSE_NORMAL, "Chat session ended")
