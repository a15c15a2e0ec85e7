from typing import Any, Dict

from directmsg.errors import ConversationNotFound, NotParticipant
from directmsg.repositories.conversation_repository import ConversationRepository


async def require_participant(conversation_repo: ConversationRepository, conversation_id: str, user_id: str) -> Dict[str, Any]:
    convo = await conversation_repo.get(conversation_id)
    if convo is None:
        raise ConversationNotFound("Conversation not found")
    if user_id not in convo.get("participants", []):
        raise NotParticipant("Not a participant of this conversation")
    return convo
