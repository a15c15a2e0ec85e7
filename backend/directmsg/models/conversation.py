from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    kind: Literal["private"]
    # JSON array of the sorted participant ids; unique index
    pair_key: str
    participants: List[str]
    created_at: datetime
    last_message_at: datetime
    last_message_preview: Optional[str]
    # per-participant records keyed by user id
    joined_at: Dict[str, datetime]
    # absent key -> nothing read yet
    last_read_at: Dict[str, datetime]
