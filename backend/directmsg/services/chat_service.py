import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import redis.asyncio as redis
from pymongo.errors import PyMongoError

from directmsg import config
from directmsg.errors import EmptyMessage, InvalidUserId, storage_errors
from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.repositories.message_repository import MessageRepository
from directmsg.repositories.profile_repository import ProfileRepository
from directmsg.schemas.conversation import ConversationSummary, Participant
from directmsg.schemas.message import Attachment, Message
from directmsg.schemas.profile import Profile
from directmsg.schemas.realtime import MessageCreatedEvent, TypingEvent
from directmsg.services.access import require_participant
from directmsg.services.thread_sync import OnMessage, OnTyping, ThreadView
from directmsg.services.unread_tracker import UnreadTracker
from directmsg.utils.realtime_bus import conversation_channel, user_channel


logger = logging.getLogger(__name__)


def message_from_doc(doc: Dict[str, Any], sender: Optional[Profile] = None) -> Message:
    attachment = None
    if doc.get("attachment_url"):
        kind = doc.get("attachment_type")
        attachment = Attachment(
            url=doc["attachment_url"],
            type=kind if kind in ("image", "file") else "file",
            name=doc.get("attachment_name") or "attachment",
        )
    return Message(
        id=doc["_id"],
        conversation_id=doc["conversation_id"],
        sender_id=doc["sender_id"],
        content=doc.get("content") or "",
        attachment=attachment,
        created_at=doc["created_at"],
        sender=sender,
    )


def _check_user_id(user_id: str) -> None:
    # ids become field names in the conversation document
    if not user_id or "." in user_id or user_id.startswith("$"):
        raise InvalidUserId(f"Invalid user id {user_id!r}")


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        profile_repo: ProfileRepository,
        bus,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._profile_repo = profile_repo
        self.bus = bus
        self.unread = UnreadTracker(conversation_repo, message_repo)

    async def resolve_conversation(self, user_a: str, user_b: str) -> str:
        _check_user_id(user_a)
        _check_user_id(user_b)
        if user_a == user_b:
            raise InvalidUserId("Cannot start a conversation with yourself")
        with storage_errors("resolve conversation"):
            convo = await self._conversation_repo.get_or_create_one_to_one(user_a, user_b)
        return convo["_id"]

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        text = (content or "").strip()
        if not text and attachment is None:
            raise EmptyMessage("Message content cannot be empty")
        with storage_errors("send message"):
            convo = await require_participant(self._conversation_repo, conversation_id, sender_id)
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=text,
                attachment=attachment.model_dump() if attachment else None,
            )
        message = message_from_doc(saved)
        # stored from here on: the send must not report a failure
        try:
            await self._conversation_repo.update_on_new_message(conversation_id, saved["created_at"], message.preview)
        except PyMongoError as exc:
            logger.warning("Last activity of %s not updated for message %s: %s", conversation_id, message.id, exc)
        await self._publish_message(convo["participants"], message)
        return message.model_copy(update={"sender": await self.get_profile(sender_id)})

    async def list_messages(
        self,
        conversation_id: str,
        viewer_id: str,
        limit: int = config.DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
        mark_read: bool = False,
    ) -> Tuple[List[Message], Optional[str]]:
        with storage_errors("list messages"):
            await require_participant(self._conversation_repo, conversation_id, viewer_id)
            docs, next_cursor = await self._message_repo.get_messages_by_conversation(
                conversation_id, limit=limit, cursor=cursor
            )
        profiles = await self.get_profiles({d["sender_id"] for d in docs})
        messages = [message_from_doc(d, profiles[d["sender_id"]]) for d in docs]
        if mark_read:
            await self.mark_read(conversation_id, viewer_id)
        return messages, next_cursor

    async def iter_messages(self, conversation_id: str, viewer_id: str) -> AsyncIterator[Message]:
        with storage_errors("list messages"):
            await require_participant(self._conversation_repo, conversation_id, viewer_id)
        cache: Dict[str, Profile] = {}
        async for doc in self._message_repo.iter_messages(conversation_id):
            sender_id = doc["sender_id"]
            if sender_id not in cache:
                cache[sender_id] = await self.get_profile(sender_id)
            yield message_from_doc(doc, cache[sender_id])

    async def list_conversations(
        self, user_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[ConversationSummary], Optional[str]]:
        with storage_errors("list conversations"):
            items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
            last_docs = await asyncio.gather(
                *(self._message_repo.get_last_message(convo["_id"]) for convo in items)
            )
        counts = await self.unread.unread_counts(user_id, items)

        others = {convo["_id"]: self._other_participant(convo, user_id) for convo in items}
        profiles = await self.get_profiles(set(others.values()) | {user_id})

        summaries = []
        for convo, last_doc in zip(items, last_docs):
            last_message = None
            if last_doc is not None:
                last_message = message_from_doc(last_doc, profiles[last_doc["sender_id"]])
            summaries.append(
                ConversationSummary(
                    conversation_id=convo["_id"],
                    participant=profiles[others[convo["_id"]]],
                    last_message=last_message,
                    last_message_preview=last_message.preview if last_message else None,
                    last_activity_at=last_message.created_at if last_message else convo["created_at"],
                    unread_count=counts.get(convo["_id"], 0),
                )
            )
        return summaries, next_cursor

    async def mark_read(self, conversation_id: str, user_id: str) -> Participant:
        return await self.unread.mark_read(conversation_id, user_id)

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        return await self.unread.unread_count(conversation_id, user_id)

    async def total_unread(self, user_id: str) -> int:
        return await self.unread.total_unread(user_id)

    async def open_thread(
        self,
        conversation_id: str,
        viewer_id: str,
        limit: int = config.DEFAULT_PAGE_SIZE,
        on_message: Optional[OnMessage] = None,
        on_typing: Optional[OnTyping] = None,
        mark_read: bool = True,
    ) -> ThreadView:
        view = ThreadView(self, conversation_id, viewer_id, on_message=on_message, on_typing=on_typing)
        await view.open(limit=limit, mark_read=mark_read)
        return view

    async def publish_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> TypingEvent:
        with storage_errors("typing"):
            await require_participant(self._conversation_repo, conversation_id, user_id)
        profile = await self.get_profile(user_id)
        event = TypingEvent(
            conversation_id=conversation_id,
            user_id=user_id,
            display_name=profile.display_name,
            is_typing=is_typing,
            expires_in_ms=config.TYPING_TTL_MS,
        )
        await self._publish(conversation_channel(conversation_id), event.model_dump_json())
        return event

    async def get_profiles(self, user_ids) -> Dict[str, Profile]:
        ids = set(user_ids)
        try:
            found = await self._profile_repo.get_profiles(ids)
        except PyMongoError as exc:
            logger.warning("Profile lookup failed, using placeholders: %s", exc)
            found = {}
        return {uid: found.get(uid) or Profile.placeholder(uid) for uid in ids}

    async def get_profile(self, user_id: str) -> Profile:
        profiles = await self.get_profiles({user_id})
        return profiles[user_id]

    async def _publish_message(self, participants: List[str], message: Message) -> None:
        payload = MessageCreatedEvent(conversation_id=message.conversation_id, message=message).model_dump_json()
        await self._publish(conversation_channel(message.conversation_id), payload)
        for user_id in participants:
            await self._publish(user_channel(user_id), payload)

    async def _publish(self, channel: str, payload: str) -> None:
        # realtime is best effort; the message is already stored
        try:
            await self.bus.publish(channel, payload)
        except redis.RedisError as exc:
            logger.warning("Publishing to %s failed: %s", channel, exc)

    @staticmethod
    def _other_participant(convo: Dict[str, Any], user_id: str) -> str:
        for participant in convo.get("participants", []):
            if participant != user_id:
                return participant
        return user_id
