"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Every field is camelCase on the wire; requests also accept snake_case names.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from messenger.config import settings
from messenger.models import ConversationType, ParticipantRole


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class UserCreateRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=64, description="Unique username")
    display_name: Optional[str] = Field(None, max_length=128, description="Name shown next to messages")

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username must not be blank")
        return v


class ConversationCreateRequest(CamelModel):
    """
    Validates conversation creation.

    DIRECT requires exactly two participant ids; GROUP requires at least one
    (the first becomes the owner) and takes an optional name.
    """
    type: ConversationType = Field(..., description="DIRECT or GROUP")
    participant_ids: List[int] = Field(..., description="User ids to include")
    name: Optional[str] = Field(None, max_length=255, description="Group name (GROUP only)")


class ParticipantAddRequest(CamelModel):
    user_id: int = Field(..., description="User to add")
    role: ParticipantRole = Field(default=ParticipantRole.MEMBER, description="Membership role")


class MessageSendRequest(CamelModel):
    """
    Validates an outgoing message.

    Validates:
    - body: required, not blank, bounded length
    - idempotency_key: optional token; repeating it returns the original message
    """
    body: str = Field(..., min_length=1, max_length=settings.MAX_BODY_LENGTH, description="Message body")
    idempotency_key: Optional[str] = Field(None, max_length=255, description="Deduplication token")

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("body must not be blank")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Structured failure body."""
    kind: str = Field(..., description="Machine-checkable error kind")
    detail: Any = Field(..., description="Error description")


class UserResponse(CamelModel):
    id: int
    username: str
    display_name: Optional[str] = None
    created_at: str


class ParticipantResponse(CamelModel):
    user_id: int
    username: str
    role: ParticipantRole
    joined_at: str


class ConversationResponse(CamelModel):
    id: int
    type: ConversationType
    name: Optional[str] = None
    created_at: str
    participants: List[ParticipantResponse] = Field(default_factory=list)

    @classmethod
    def from_conversation(cls, conversation) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            type=conversation.type,
            name=conversation.name,
            created_at=conversation.created_at,
            participants=[
                ParticipantResponse(
                    user_id=p.user_id,
                    username=p.user.username,
                    role=p.role,
                    joined_at=p.joined_at,
                )
                for p in conversation.participants
            ],
        )


class ConversationSummaryResponse(CamelModel):
    id: int
    type: ConversationType
    name: Optional[str] = None
    participants: List[str] = Field(default_factory=list, description="Usernames in join order")


class MessageResponse(CamelModel):
    id: int
    sender_id: int
    sender_username: str
    sender_display_name: str
    body: str
    created_at: str
    status: Optional[str] = Field(None, description="'created' or 'duplicate' on send")


class MessagePageResponse(CamelModel):
    items: List[MessageResponse] = Field(default_factory=list)
    next_cursor: Optional[int] = Field(None, description="Pass back as ?cursor= for the next page")


class EventEnvelope(CamelModel):
    event_id: int
    conversation_id: int
    type: str
    payload: Dict[str, Any]
    created_at: str


class EventPageResponse(CamelModel):
    items: List[EventEnvelope] = Field(default_factory=list)
    next_cursor: Optional[int] = None


class HealthResponse(CamelModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    sessions: Optional[int] = Field(None, description="Open push channels in this process")
