from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from directmsg import config
from directmsg.errors import MessagingError, http_error
from directmsg.schemas.conversation import (
    ConversationPage,
    ConversationRef,
    ReadReceipt,
    ResolveConversationRequest,
    UnreadTotal,
)
from directmsg.schemas.message import Message, MessagePage, SendMessageRequest
from directmsg.services.chat_service import ChatService
from directmsg.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("", response_model=ConversationRef)
async def resolve_conversation(body: ResolveConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        conversation_id = await service.resolve_conversation(current_user["_id"], body.other_user_id)
    except MessagingError as exc:
        raise http_error(exc)
    return ConversationRef(conversation_id=conversation_id)


@router.get("", response_model=ConversationPage)
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    except MessagingError as exc:
        raise http_error(exc)
    return ConversationPage(items=items, next_cursor=next_cursor)


@router.get("/unread", response_model=UnreadTotal)
async def total_unread(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        total = await service.total_unread(current_user["_id"])
    except MessagingError as exc:
        raise http_error(exc)
    return UnreadTotal(total=total)


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(conversation_id: str, limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=200), cursor: Optional[str] = None, mark_read: bool = True, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    # viewing a thread counts as reading it unless the client opts out
    try:
        messages, next_cursor = await service.list_messages(
            conversation_id, current_user["_id"], limit=limit, cursor=cursor, mark_read=mark_read
        )
    except MessagingError as exc:
        raise http_error(exc)
    return MessagePage(items=messages, next_cursor=next_cursor)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.send_message(conversation_id, current_user["_id"], body.content, body.attachment)
    except MessagingError as exc:
        raise http_error(exc)


@router.post("/{conversation_id}/read", response_model=ReadReceipt)
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        participant = await service.mark_read(conversation_id, current_user["_id"])
        unread = await service.unread_count(conversation_id, current_user["_id"])
    except MessagingError as exc:
        raise http_error(exc)
    return ReadReceipt(conversation_id=conversation_id, last_read_at=participant.last_read_at, unread_count=unread)
