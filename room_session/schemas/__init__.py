"""
room_session.schemas
~~~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for rooms, sessions and the API.
"""
from room_session.schemas.api_response import ApiResponse
from room_session.schemas.room import (
    ROOM_DELETED,
    GeoPoint,
    Participant,
    Room,
    RoomCreate,
    RoomVisibility,
)
from room_session.schemas.session import EntryResult, QuickEntryRequest, SessionState

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
