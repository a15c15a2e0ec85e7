from datetime import datetime
from typing import Literal, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    # attachment reference, all None for text messages
    attachment_url: Optional[str]
    attachment_type: Optional[Literal["image", "file"]]
    attachment_name: Optional[str]
