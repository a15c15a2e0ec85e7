from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from directmsg.database.connection import mongo_db_dependency
from directmsg.repositories.attachment_repository import GridFSAttachmentStore
from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.repositories.message_repository import MessageRepository
from directmsg.repositories.profile_repository import ProfileRepository
from directmsg.services.attachment_service import AttachmentService
from directmsg.services.chat_service import ChatService
from directmsg.utils.realtime_bus import get_bus
from directmsg.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


def user_from_token(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    return {"_id": str(sub)}


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict:
    user = user_from_token(credentials.credentials if credentials else None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_chat_service(db=Depends(mongo_db_dependency), bus=Depends(get_bus)) -> ChatService:
    msg_repo = MessageRepository(db)
    convo_repo = ConversationRepository(db)
    profile_repo = ProfileRepository(db)
    return ChatService(msg_repo, convo_repo, profile_repo, bus)


def get_attachment_store(db=Depends(mongo_db_dependency)) -> GridFSAttachmentStore:
    return GridFSAttachmentStore(db)


def get_attachment_service(store=Depends(get_attachment_store)) -> AttachmentService:
    return AttachmentService(store)
