"""
chatroom.api.rooms
~~~~~~~~~~~~~~~~~~

房间 REST 接口 —— 历史回看 + 活跃房间列表。

端点:
  - ``GET  /chat/{room_id}/history``   → 获取最近 N 条消息（时间正序）
  - ``GET  /rooms``                    → 获取活跃房间列表
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from chatroom.api.deps import get_chat_repository, get_room_hub
from chatroom.core.rate_limit import limiter
from chatroom.db.chat_repository import ChatRepository
from chatroom.schemas.api_response import ApiResponse
from chatroom.schemas.chat_events import HistoryResponseData
from chatroom.services.room_hub import RoomHub

router: APIRouter = APIRouter()


@router.get(
    "/chat/{room_id}/history",
    summary="获取聊天历史",
    response_model=ApiResponse[HistoryResponseData],
)
@limiter.limit("10/second")
async def get_history(
    request: Request,
    room_id: str,
    limit: int = Query(100, ge=1, le=500, description="最大返回条数"),
    repo: ChatRepository = Depends(get_chat_repository),
) -> ApiResponse[HistoryResponseData]:
    """读取指定房间最近的消息，不依赖任何在线连接。

    Args:
        room_id: 房间唯一标识。
        limit: 最大返回条数（1-500）。
    """
    messages = await repo.get_recent(room_id, limit=limit)
    return ApiResponse.ok(
        data=HistoryResponseData(room_id=room_id, messages=messages, total=len(messages)),
    )


@router.get("/rooms", summary="获取活跃房间列表")
@limiter.limit("10/second")
async def list_rooms(
    request: Request,
    hub: RoomHub = Depends(get_room_hub),
) -> ApiResponse[list[dict[str, Any]]]:
    """返回当前内存中的活跃房间（休眠中的房间不在列表内）。"""
    return ApiResponse.ok(data=hub.list_rooms())
