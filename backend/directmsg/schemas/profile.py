from typing import Optional

from pydantic import BaseModel


UNKNOWN_DISPLAY_NAME = "Unknown User"
UNKNOWN_USERNAME = "unknown"


class Profile(BaseModel):

    user_id: str
    display_name: str
    username: str
    avatar_url: Optional[str] = None

    @classmethod
    def placeholder(cls, user_id: str) -> "Profile":
        return cls(user_id=user_id, display_name=UNKNOWN_DISPLAY_NAME, username=UNKNOWN_USERNAME)
