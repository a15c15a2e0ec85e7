from datetime import datetime
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from directmsg.schemas.profile import Profile
from directmsg.utils.clock import as_aware


AttachmentType = Literal["image", "file"]


class Attachment(BaseModel):

    url: str = Field(min_length=1)
    type: AttachmentType = "file"
    name: str = "attachment"


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    attachment: Optional[Attachment] = None
    created_at: datetime
    sender: Optional[Profile] = None

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_aware(value)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def preview(self) -> str:
        if self.content:
            return self.content[:200]
        if self.attachment is None:
            return ""
        return "Sent an image" if self.attachment.type == "image" else "Sent a file"


class SendMessageRequest(BaseModel):

    content: str = ""
    attachment: Optional[Attachment] = None


class MessagePage(BaseModel):

    items: list[Message]
    next_cursor: Optional[str] = None
