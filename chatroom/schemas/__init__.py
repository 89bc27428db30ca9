"""
chatroom.schemas
~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from chatroom.schemas.api_response import ApiResponse
from chatroom.schemas.chat_events import ChatMessage, HistoryResponseData

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
