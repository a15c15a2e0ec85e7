from typing import Dict, Iterable

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from directmsg.models.profile import ProfileDocument
from directmsg.schemas.profile import UNKNOWN_DISPLAY_NAME, UNKNOWN_USERNAME, Profile


def profile_from_doc(doc: ProfileDocument) -> Profile:
    return Profile(
        user_id=doc["user_id"],
        display_name=doc.get("display_name") or doc.get("username") or UNKNOWN_DISPLAY_NAME,
        username=doc.get("username") or UNKNOWN_USERNAME,
        avatar_url=doc.get("avatar_url"),
    )


class ProfileRepository:
    """Read-only view over the platform's profiles collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("profiles")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index([("user_id", ASCENDING)], unique=True)

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        # unknown ids are simply absent from the result
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        profiles: Dict[str, Profile] = {}
        async for doc in self._collection.find({"user_id": {"$in": ids}}):
            profiles[doc["user_id"]] = profile_from_doc(doc)
        return profiles
