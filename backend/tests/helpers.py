import asyncio
import uuid
from typing import Callable, Dict, List, Optional

from mongomock_motor import AsyncMongoMockClient

from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.repositories.message_repository import MessageRepository
from directmsg.repositories.profile_repository import ProfileRepository
from directmsg.services.chat_service import ChatService
from directmsg.utils.realtime_bus import LocalBus


ALICE = "u_alice"
BOB = "u_bob"
CAROL = "u_carol"


def make_db():
    return AsyncMongoMockClient()[f"directmsg_test_{uuid.uuid4().hex}"]


async def prepare_db(db) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await ProfileRepository(db).ensure_indexes()
    await db["profiles"].insert_many([
        {"user_id": ALICE, "display_name": "Alice", "username": "alice", "avatar_url": "https://cdn.example/alice.png"},
        {"user_id": BOB, "display_name": "Bob", "username": "bob", "avatar_url": None},
    ])


def make_service(db, bus: Optional[LocalBus] = None) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        ProfileRepository(db),
        bus if bus is not None else LocalBus(),
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class MemoryAttachmentStore:

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.blobs: Dict[str, bytes] = {}
        self.calls: List[str] = []

    async def put(self, owner_id: str, filename: str, content_type: str, data: bytes) -> str:
        self.calls.append(filename)
        if self.fail:
            raise OSError("storage offline")
        key = f"{owner_id}/{len(self.blobs)}-{filename}"
        self.blobs[key] = data
        return f"https://files.example/{key}"
