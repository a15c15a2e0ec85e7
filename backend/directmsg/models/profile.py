from typing import Optional, TypedDict


class ProfileDocument(TypedDict, total=False):

    _id: str
    user_id: str
    display_name: str
    username: str
    avatar_url: Optional[str]
