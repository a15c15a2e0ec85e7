import asyncio
import contextlib
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from directmsg import config
from directmsg.errors import ConversationNotFound, MessagingError, NotParticipant
from directmsg.schemas.message import Message
from directmsg.schemas.realtime import ClientFrame, TypingEvent
from directmsg.services.chat_service import ChatService
from directmsg.utils.dependencies import get_chat_service, user_from_token
from directmsg.utils.realtime_bus import user_channel


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


async def _authenticate(websocket: WebSocket):
    # JWT for sockets comes in the query string: ?token=...
    user = user_from_token(websocket.query_params.get("token"))
    if user is None:
        await websocket.close(code=4401)
    return user


@router.websocket("/ws/conversations/{conversation_id}")
async def thread_socket(websocket: WebSocket, conversation_id: str, limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=200), service: ChatService = Depends(get_chat_service)):
    user = await _authenticate(websocket)
    if user is None:
        return
    user_id = user["_id"]
    await websocket.accept()

    async def on_message(message: Message) -> None:
        await websocket.send_text(json.dumps({"type": "message.created", "message": message.model_dump(mode="json")}))

    async def on_typing(event: TypingEvent) -> None:
        await websocket.send_text(event.model_dump_json())

    try:
        view = await service.open_thread(conversation_id, user_id, limit=limit, on_message=on_message, on_typing=on_typing)
    except ConversationNotFound:
        await websocket.close(code=4404)
        return
    except NotParticipant:
        await websocket.close(code=4403)
        return
    except MessagingError as exc:
        await websocket.close(code=1011, reason=exc.detail)
        return

    async with view:
        try:
            await websocket.send_text(json.dumps({
                "type": "thread.snapshot",
                "conversation_id": conversation_id,
                "messages": [m.model_dump(mode="json") for m in view.messages],
                "next_cursor": view.next_cursor,
            }))
            while True:
                data = await websocket.receive_text()
                try:
                    frame = ClientFrame.model_validate_json(data)
                except ValidationError:
                    await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid message payload"}))
                    continue
                try:
                    if frame.type == "send":
                        sent = await service.send_message(conversation_id, user_id, frame.content, frame.attachment)
                        await websocket.send_text(json.dumps({"type": "ack", "message": sent.model_dump(mode="json")}))
                    elif frame.type == "mark_read":
                        participant = await service.mark_read(conversation_id, user_id)
                        await websocket.send_text(json.dumps({
                            "type": "read",
                            "conversation_id": conversation_id,
                            "last_read_at": participant.last_read_at.isoformat() if participant.last_read_at else None,
                        }))
                    elif frame.type == "load_older":
                        older = await view.load_older()
                        await websocket.send_text(json.dumps({
                            "type": "history",
                            "conversation_id": conversation_id,
                            "messages": [m.model_dump(mode="json") for m in older],
                            "next_cursor": view.next_cursor,
                        }))
                    else:
                        await service.publish_typing(conversation_id, user_id, frame.type == "typing_start")
                except MessagingError as exc:
                    # the session survives; the client keeps its compose state
                    await websocket.send_text(json.dumps({"type": "error", "detail": exc.detail}))
        except WebSocketDisconnect:
            logger.debug("Thread socket for %s in %s closed", user_id, conversation_id)


@router.websocket("/ws/inbox")
async def inbox_socket(websocket: WebSocket, service: ChatService = Depends(get_chat_service)):
    user = await _authenticate(websocket)
    if user is None:
        return
    await websocket.accept()
    subscriber = await service.bus.subscribe(user_channel(user["_id"]), websocket.send_text)
    sub_task = asyncio.create_task(subscriber.run())
    try:
        while True:
            # nothing is expected from the client; this only detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Inbox socket for %s closed", user["_id"])
    finally:
        await subscriber.cancel()
        sub_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sub_task
