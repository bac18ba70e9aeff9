"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

from app.pagination import format_timestamp


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageCreate(BaseModel):
    """
    Body of POST /{room kind}/{room_id}/messages.

    ``content`` is left unchecked here so that a missing, non-string, blank
    or oversized value is rejected by the chat service with a 400 and a
    precise message.
    """
    content: Any = Field(None, description="Message text (1-4000 characters after trimming)")

    model_config = {
        "json_schema_extra": {
            "examples": [{"content": "See everyone at the meetup on Thursday!"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class StatusResponse(BaseModel):
    """Response model for successful operations without a body."""
    status: str = Field(default="ok", description="Operation status")


class MessageResponse(BaseModel):
    """
    A chat message with its sender's current display metadata.
    Serialized with camelCase keys.
    """
    id: str = Field(..., description="Message identifier")
    room_id: int = Field(..., alias="roomId", description="Chapter or group id")
    sender_id: int = Field(..., alias="senderId", description="Author user id")
    sender_name: str = Field(..., alias="senderName", description="Author's current display name")
    sender_avatar_url: Optional[str] = Field(
        None,
        alias="senderAvatarUrl",
        description="Author's current avatar URL"
    )
    content: str = Field(..., description="Message text")
    created_at: datetime = Field(..., alias="createdAt", description="Server timestamp (UTC)")
    edited_at: Optional[datetime] = Field(None, alias="editedAt", description="Reserved, always null")

    model_config = {
        "populate_by_name": True,
    }

    @field_serializer("created_at", "edited_at")
    def _serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None

    @classmethod
    def from_message(cls, message) -> "MessageResponse":
        return cls(
            id=str(message.id),
            room_id=message.room_id,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            sender_avatar_url=message.sender_avatar_url,
            content=message.content,
            created_at=message.created_at,
            edited_at=message.edited_at,
        )


class MessageEnvelope(BaseModel):
    """Response model for POST messages."""
    message: MessageResponse


class MessagesPageResponse(BaseModel):
    """
    Response model for GET messages.

    Contains:
    - messages: oldest first
    - nextCursor: pass back as ?cursor= for older history, null when exhausted
    - hasMore: whether older history exists
    """
    messages: list[MessageResponse] = Field(default_factory=list, description="Messages, oldest first")
    next_cursor: Optional[str] = Field(None, alias="nextCursor", description="Opaque cursor")
    has_more: bool = Field(False, alias="hasMore", description="Whether older history exists")

    model_config = {"populate_by_name": True}


class RoomSummaryResponse(BaseModel):
    """Response model for GET messages/summary."""
    room_id: int = Field(..., alias="roomId")
    message_count: int = Field(..., alias="messageCount", ge=0)
    last_activity: Optional[datetime] = Field(None, alias="lastActivity", description="Newest message time, null if none")

    model_config = {"populate_by_name": True}

    @field_serializer("last_activity")
    def _serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None


class RoomCount(BaseModel):
    room_id: int
    name: Optional[str] = None
    count: int = Field(..., ge=0)
    unique_senders: int = Field(..., ge=0)


class SenderCount(BaseModel):
    sender_id: int
    name: str
    email: Optional[str] = None
    count: int = Field(..., ge=0)
    rooms_active: int = Field(..., ge=0, description="Distinct rooms the sender posted in")


class HourCount(BaseModel):
    hour: int = Field(..., ge=0, le=23, description="Hour of day (UTC)")
    count: int = Field(..., ge=0)


class DayActivity(BaseModel):
    date: str = Field(..., description="YYYY-MM-DD (UTC)")
    message_count: int = Field(..., ge=0)
    unique_users: int = Field(..., ge=0)
    active_rooms: int = Field(..., ge=0)


class ChatStatsResponse(BaseModel):
    """
    Response model for GET /admin/chat/stats.

    Message-level analytics for one room kind over the last ``days`` days.
    """
    room_kind: str
    days: int = Field(..., ge=1)
    total_messages: int = Field(..., ge=0)
    active_rooms: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)
    messages_per_room: list[RoomCount] = Field(default_factory=list)
    messages_per_sender: list[SenderCount] = Field(default_factory=list)
    peak_usage: list[HourCount] = Field(default_factory=list)
    daily_activity: list[DayActivity] = Field(default_factory=list)
    first_message_ts: Optional[str] = None
    last_message_ts: Optional[str] = None
    avg_message_length: float = Field(0.0, ge=0)


class PublishedPostResponse(BaseModel):
    id: int
    published_at: Optional[datetime] = None

    @field_serializer("published_at")
    def _serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None


class PublishResponse(BaseModel):
    """Response model for POST /posts/publish-scheduled."""
    status: str = Field(default="ok")
    published: int = Field(..., ge=0, description="Number of posts published by this run")
    posts: list[PublishedPostResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
