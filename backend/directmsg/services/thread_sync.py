import asyncio
import bisect
import contextlib
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from directmsg import config
from directmsg.schemas.message import Message
from directmsg.schemas.profile import Profile
from directmsg.schemas.realtime import MessageCreatedEvent, TypingEvent
from directmsg.utils.realtime_bus import conversation_channel

if TYPE_CHECKING:
    from directmsg.services.chat_service import ChatService


logger = logging.getLogger(__name__)

OnMessage = Callable[[Message], Awaitable[None]]
OnTyping = Callable[[TypingEvent], Awaitable[None]]


def merge_messages(current: Sequence[Message], incoming: Iterable[Message]) -> List[Message]:
    """Union of both sequences keyed by message id, ascending by (created_at, id).

    The first copy of a message wins, so replays and late duplicates are no-ops.
    """
    by_id: Dict[str, Message] = {m.id: m for m in current}
    for message in incoming:
        by_id.setdefault(message.id, message)
    return sorted(by_id.values(), key=lambda m: m.sort_key)


class ThreadState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


class ThreadView:
    """One open thread: the ordered message list plus its live subscription.

    The subscription is taken before the initial page is fetched so that no
    message can fall between the two; both sources go through the same keyed
    merge. Events that arrive while the page is loading are merged silently and
    show up in the snapshot; only events merged after the view is subscribed
    are passed to ``on_message``. After ``close()`` every event is ignored.
    """

    def __init__(
        self,
        service: "ChatService",
        conversation_id: str,
        viewer_id: str,
        on_message: Optional[OnMessage] = None,
        on_typing: Optional[OnTyping] = None,
    ) -> None:
        self._service = service
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self._on_message = on_message
        self._on_typing = on_typing
        self.state = ThreadState.IDLE
        self.next_cursor: Optional[str] = None
        self._messages: List[Message] = []
        self._ids: set[str] = set()
        self._profiles: Dict[str, Profile] = {}
        self._lock = asyncio.Lock()
        self._subscription = None
        self._task: Optional[asyncio.Task] = None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    async def open(self, limit: int = config.DEFAULT_PAGE_SIZE, mark_read: bool = True) -> List[Message]:
        if self.state is not ThreadState.IDLE or self._subscription is not None:
            raise RuntimeError("thread view can only be opened once")
        self._subscription = await self._service.bus.subscribe(
            conversation_channel(self.conversation_id), self._on_event
        )
        self._task = asyncio.create_task(self._subscription.run())
        try:
            page, self.next_cursor = await self._service.list_messages(
                self.conversation_id, self.viewer_id, limit=limit
            )
            await self._merge_page(page)
            if mark_read:
                await self._service.mark_read(self.conversation_id, self.viewer_id)
        except BaseException:
            await self.close()
            raise
        # everything merged up to here belongs to the snapshot
        if self.state is ThreadState.IDLE:
            self.state = ThreadState.SUBSCRIBED
        return self.messages

    async def load_older(self, limit: int = config.DEFAULT_PAGE_SIZE) -> List[Message]:
        """Merge the page before the oldest loaded message and return its messages.

        Older history is not passed to ``on_message``. Returns an empty list once
        the start of the conversation has been reached or the view is not open.
        """
        if self.state is not ThreadState.SUBSCRIBED or self.next_cursor is None:
            return []
        page, self.next_cursor = await self._service.list_messages(
            self.conversation_id, self.viewer_id, limit=limit, cursor=self.next_cursor
        )
        if self.state is not ThreadState.SUBSCRIBED:
            return []
        await self._merge_page(page)
        return page

    async def _merge_page(self, page: List[Message]) -> None:
        for message in page:
            if message.sender is not None:
                self._profiles[message.sender_id] = message.sender
        async with self._lock:
            self._messages = merge_messages(self._messages, page)
            self._ids = {m.id for m in self._messages}

    async def close(self) -> None:
        if self.state is ThreadState.UNSUBSCRIBED:
            return
        self.state = ThreadState.UNSUBSCRIBED
        if self._subscription is not None:
            await self._subscription.cancel()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "ThreadView":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def add(self, message: Message) -> bool:
        """Merge one message; False when it was already present or the view is closed."""
        if self.state is ThreadState.UNSUBSCRIBED or message.id in self._ids:
            return False
        if message.sender is None:
            message = message.model_copy(update={"sender": await self._sender(message.sender_id)})
        # the profile lookup may have outlived the view
        if self.state is ThreadState.UNSUBSCRIBED:
            return False
        async with self._lock:
            if message.id in self._ids:
                return False
            bisect.insort(self._messages, message, key=lambda m: m.sort_key)
            self._ids.add(message.id)
        if self.state is ThreadState.SUBSCRIBED and self._on_message is not None:
            await self._on_message(message)
        return True

    async def _on_event(self, raw: str) -> None:
        if self.state is ThreadState.UNSUBSCRIBED:
            return
        try:
            data = json.loads(raw)
            kind = data.get("type")
            if kind == "message.created":
                event = MessageCreatedEvent.model_validate(data)
                if event.message.conversation_id == self.conversation_id:
                    await self.add(event.message)
            elif kind == "typing":
                typing = TypingEvent.model_validate(data)
                if typing.user_id != self.viewer_id and self._on_typing is not None:
                    await self._on_typing(typing)
            else:
                logger.debug("Ignoring %r event on %s", kind, self.conversation_id)
        except (ValueError, ValidationError, AttributeError) as exc:
            logger.warning("Dropping malformed event on %s: %s", self.conversation_id, exc)

    async def _sender(self, user_id: str) -> Profile:
        profile = self._profiles.get(user_id)
        if profile is None:
            profile = await self._service.get_profile(user_id)
            self._profiles[user_id] = profile
        return profile
