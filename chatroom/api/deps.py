from fastapi import Request

from chatroom.db.chat_repository import ChatRepository
from chatroom.services.room_hub import RoomHub


def get_room_hub(request: Request) -> RoomHub:
    return request.app.state.room_hub


def get_chat_repository(request: Request) -> ChatRepository:
    return request.app.state.chat_repository
