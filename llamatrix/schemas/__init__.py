"""
llamatrix.schemas
~~~~~~~~~~~~~~~~~
Pydantic schemas: chat domain models and status API responses.
"""
from llamatrix.schemas.api_response import ApiResponse
from llamatrix.schemas.chat import (
    ChatEvent,
    ConversationTurn,
    EventKind,
    MessageHandle,
    PromptCommand,
    PromptRequest,
    Role,
    Room,
    RoomKind,
    RoomState,
)
from llamatrix.schemas.room_status import HistoryResponseData, RoomInfoData, TurnData

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
