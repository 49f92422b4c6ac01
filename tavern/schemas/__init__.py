"""
tavern.schemas
~~~~~~~~~~~~~~
Pydantic schemas and models for the API and the event stream.
"""
from tavern.schemas.api_response import ApiResponse
from tavern.schemas.events import SessionEvent, decode_event, encode_event
from tavern.schemas.session import (
    ChatMessage,
    ChatRoom,
    GameSession,
    InitiativeEntry,
    Player,
    SessionSnapshot,
    SessionSummary,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
