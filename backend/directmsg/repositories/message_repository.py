import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from directmsg.models.message import MessageDocument
from directmsg.repositories.conversation_repository import to_object_id
from directmsg.utils.clock import from_millis, to_millis, utcnow


logger = logging.getLogger(__name__)


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)]
        )

    async def save_message(
        self,
        conversation_id,
        sender_id: str,
        content: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> MessageDocument:
        attachment = attachment or {}
        doc: Dict[str, Any] = {
            "conversation_id": to_object_id(conversation_id),
            "sender_id": sender_id,
            "content": content,
            "created_at": utcnow(),
            "attachment_url": attachment.get("url"),
            "attachment_type": attachment.get("type"),
            "attachment_name": attachment.get("name"),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        doc["conversation_id"] = str(doc["conversation_id"])
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": to_object_id(conversation_id)}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: ts_ms:oid
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = from_millis(int(ts_str))
                query["$or"] = [
                    {"created_at": {"$lt": ts}},
                    {"created_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                logger.warning("Ignoring malformed message cursor %r", cursor)
        cur = self.collection.find(query, sort=sort, limit=limit)
        items = await cur.to_list(length=limit)
        for it in items:
            self._normalize(it)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_millis(last['created_at'])}:{last['_id']}"
        # newest page first from the db, ascending for rendering
        return list(reversed(items)), next_cursor

    async def iter_messages(self, conversation_id) -> AsyncIterator[MessageDocument]:
        cur = self.collection.find(
            {"conversation_id": to_object_id(conversation_id)},
            sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
        )
        async for doc in cur:
            yield self._normalize(doc)

    async def get_last_message(self, conversation_id) -> Optional[MessageDocument]:
        cur = self.collection.find(
            {"conversation_id": to_object_id(conversation_id)},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            limit=1,
        )
        items = await cur.to_list(length=1)
        return self._normalize(items[0]) if items else None

    async def count_unread(self, conversation_id, user_id: str, since: Optional[datetime]) -> int:
        return await self.collection.count_documents(
            self._unread_clause(to_object_id(conversation_id), user_id, since)
        )

    async def count_unread_many(self, user_id: str, watermarks: Dict[str, Optional[datetime]]) -> Dict[str, int]:
        if not watermarks:
            return {}
        clauses = [
            self._unread_clause(to_object_id(cid), user_id, since) for cid, since in watermarks.items()
        ]
        pipeline = [
            {"$match": {"$or": clauses}},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        counts = {cid: 0 for cid in watermarks}
        async for row in self.collection.aggregate(pipeline):
            counts[str(row["_id"])] = row["count"]
        return counts

    async def count_unread_total(self, user_id: str, watermarks: Dict[str, Optional[datetime]]) -> int:
        if not watermarks:
            return 0
        clauses = [
            self._unread_clause(to_object_id(cid), user_id, since) for cid, since in watermarks.items()
        ]
        return await self.collection.count_documents({"$or": clauses})

    @staticmethod
    def _unread_clause(conversation_oid: ObjectId, user_id: str, since: Optional[datetime]) -> Dict[str, Any]:
        clause: Dict[str, Any] = {"conversation_id": conversation_oid, "sender_id": {"$ne": user_id}}
        if since is not None:
            clause["created_at"] = {"$gt": since}
        return clause

    @staticmethod
    def _normalize(doc: Dict[str, Any]) -> MessageDocument:
        doc["_id"] = str(doc["_id"])
        doc["conversation_id"] = str(doc["conversation_id"])
        return doc
