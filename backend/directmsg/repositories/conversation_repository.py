import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from directmsg.models.conversation import ConversationDocument
from directmsg.utils.clock import from_millis, to_millis, utcnow


logger = logging.getLogger(__name__)


def pair_key(user_a: str, user_b: str) -> str:
    # JSON keeps the two ids apart whatever characters they contain
    return json.dumps(sorted([user_a, user_b]), separators=(",", ":"))


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def find_by_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        existing = await self.collection.find_one(
            {"pair_key": pair_key(user_a, user_b), "participants": sorted([user_a, user_b])}
        )
        if existing:
            existing["_id"] = str(existing["_id"])
        return existing

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> ConversationDocument:
        existing = await self.find_by_pair(user_a, user_b)
        if existing:
            return existing
        now = utcnow()
        doc: ConversationDocument = {
            "kind": "private",
            "pair_key": pair_key(user_a, user_b),
            "participants": sorted([user_a, user_b]),
            "created_at": now,
            "last_message_at": now,
            "last_message_preview": None,
            "joined_at": {user_a: now, user_b: now},
            "last_read_at": {},
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # lost the race against a concurrent creator; theirs is the conversation
            logger.info("Conversation for %s already created concurrently", doc["pair_key"])
            winner = await self.find_by_pair(user_a, user_b)
            if winner is None:
                raise
            return winner
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, conversation_id) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def update_on_new_message(self, conversation_id, created_at: datetime, preview: str) -> None:
        # the guard keeps an older, slower write from replacing a newer preview
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "last_message_at": {"$lte": created_at}},
            {"$set": {"last_message_at": created_at, "last_message_preview": preview}},
        )

    async def advance_watermark(self, conversation_id, user_id: str, read_at: datetime) -> Optional[datetime]:
        oid = to_object_id(conversation_id)
        await self.collection.update_one(
            {"_id": oid, "participants": user_id},
            {"$max": {f"last_read_at.{user_id}": read_at}},
        )
        doc = await self.collection.find_one({"_id": oid}, {"last_read_at": 1})
        if not doc:
            return None
        return (doc.get("last_read_at") or {}).get(user_id)

    async def ids_for_user(self, user_id: str) -> List[ConversationDocument]:
        cursor = self.collection.find({"participants": user_id}, {"last_read_at": 1})
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it["_id"])
        return items

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: timestamp_ms:object_id_hex
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = from_millis(int(ts_str))
                query["$or"] = [
                    {"last_message_at": {"$lt": ts}},
                    {"last_message_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                logger.warning("Ignoring malformed conversation cursor %r", cursor)

        cursor_db = self.collection.find(query, sort=sort, limit=limit)
        items = await cursor_db.to_list(length=limit)
        for it in items:
            it["_id"] = str(it["_id"])
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_millis(last['last_message_at'])}:{last['_id']}"
        return items, next_cursor
