import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from directmsg.errors import storage_errors
from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.repositories.message_repository import MessageRepository
from directmsg.schemas.conversation import Participant
from directmsg.services.access import require_participant
from directmsg.utils.clock import utcnow


logger = logging.getLogger(__name__)


def watermark_of(conversation: Dict[str, Any], user_id: str) -> Optional[datetime]:
    return (conversation.get("last_read_at") or {}).get(user_id)


class UnreadTracker:
    """Read watermarks per participant; unread counts are always derived from them.

    ``mark_read`` is the only writer. It uses a ``$max`` update so the watermark
    can only move forward, and it leaves the watermark untouched when nothing
    unread remains, so calling it again changes nothing.
    Counts read the watermark first and the messages second, so a message that
    lands in between is counted rather than lost.
    """

    def __init__(self, conversation_repo: ConversationRepository, message_repo: MessageRepository) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo

    async def mark_read(self, conversation_id: str, user_id: str) -> Participant:
        with storage_errors("mark read"):
            convo = await require_participant(self._conversation_repo, conversation_id, user_id)
            read_at = watermark_of(convo, user_id)
            # nothing new since the last call: keep the watermark where it is
            if read_at is None or await self._message_repo.count_unread(conversation_id, user_id, read_at):
                read_at = await self._conversation_repo.advance_watermark(conversation_id, user_id, utcnow())
        logger.debug("Watermark for %s in %s is now %s", user_id, conversation_id, read_at)
        return Participant(
            conversation_id=conversation_id,
            user_id=user_id,
            joined_at=convo["joined_at"][user_id],
            last_read_at=read_at,
        )

    async def participant(self, conversation_id: str, user_id: str) -> Participant:
        with storage_errors("load participant"):
            convo = await require_participant(self._conversation_repo, conversation_id, user_id)
        return Participant(
            conversation_id=conversation_id,
            user_id=user_id,
            joined_at=convo["joined_at"][user_id],
            last_read_at=watermark_of(convo, user_id),
        )

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        with storage_errors("count unread"):
            convo = await require_participant(self._conversation_repo, conversation_id, user_id)
            return await self._message_repo.count_unread(conversation_id, user_id, watermark_of(convo, user_id))

    async def unread_counts(self, user_id: str, conversations: Iterable[Dict[str, Any]]) -> Dict[str, int]:
        watermarks = {convo["_id"]: watermark_of(convo, user_id) for convo in conversations}
        with storage_errors("count unread"):
            return await self._message_repo.count_unread_many(user_id, watermarks)

    async def total_unread(self, user_id: str) -> int:
        with storage_errors("count unread"):
            conversations = await self._conversation_repo.ids_for_user(user_id)
            watermarks = {convo["_id"]: watermark_of(convo, user_id) for convo in conversations}
            return await self._message_repo.count_unread_total(user_id, watermarks)
