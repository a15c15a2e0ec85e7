from typing import Literal, Optional

from pydantic import BaseModel

from directmsg.schemas.message import Attachment, Message


class MessageCreatedEvent(BaseModel):

    type: Literal["message.created"] = "message.created"
    conversation_id: str
    message: Message


class TypingEvent(BaseModel):

    type: Literal["typing"] = "typing"
    conversation_id: str
    user_id: str
    display_name: str
    is_typing: bool
    expires_in_ms: int


class ClientFrame(BaseModel):
    """Client -> server frame on the thread socket."""

    type: Literal["send", "mark_read", "load_older", "typing_start", "typing_stop"]
    content: str = ""
    attachment: Optional[Attachment] = None
