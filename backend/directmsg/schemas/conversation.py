from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from directmsg.schemas.message import Message
from directmsg.schemas.profile import Profile
from directmsg.utils.clock import as_aware


class Participant(BaseModel):
    """A user's membership in a conversation together with their read watermark."""

    conversation_id: str
    user_id: str
    joined_at: datetime
    last_read_at: Optional[datetime] = None

    @field_validator("joined_at", "last_read_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_aware(value) if value is not None else None


class ResolveConversationRequest(BaseModel):

    other_user_id: str = Field(min_length=1)


class ConversationRef(BaseModel):

    conversation_id: str


class ConversationSummary(BaseModel):

    conversation_id: str
    participant: Profile
    last_message: Optional[Message] = None
    last_message_preview: Optional[str] = None
    last_activity_at: datetime
    unread_count: int = 0

    @field_validator("last_activity_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_aware(value)


class ConversationPage(BaseModel):

    items: list[ConversationSummary]
    next_cursor: Optional[str] = None


class ReadReceipt(BaseModel):

    conversation_id: str
    last_read_at: datetime
    unread_count: int


class UnreadTotal(BaseModel):

    total: int
