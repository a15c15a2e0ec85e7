import asyncio
import unittest
from unittest import mock

from pymongo.errors import AutoReconnect

from directmsg.errors import ConversationNotFound, EmptyMessage, NotParticipant, StorageUnavailable
from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.schemas.message import Attachment
from directmsg.utils.realtime_bus import conversation_channel

from tests.helpers import ALICE, BOB, CAROL, make_db, make_service, prepare_db, wait_for


class MessageStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        await prepare_db(self.db)
        self.service = make_service(self.db)
        self.conversation_id = await self.service.resolve_conversation(ALICE, BOB)

    async def test_send_trims_content_and_attaches_sender(self):
        message = await self.service.send_message(self.conversation_id, ALICE, "  hello bob  ")

        self.assertEqual(message.content, "hello bob")
        self.assertEqual(message.conversation_id, self.conversation_id)
        self.assertEqual(message.sender.display_name, "Alice")
        self.assertIsNone(message.attachment)
        self.assertIsNotNone(message.created_at.tzinfo)

    async def test_empty_message_without_attachment_is_rejected(self):
        for content in ("", "   ", "\n\t"):
            with self.subTest(content=content):
                with self.assertRaises(EmptyMessage):
                    await self.service.send_message(self.conversation_id, ALICE, content)
        self.assertEqual(await self.db["messages"].count_documents({}), 0)

    async def test_attachment_only_message_is_accepted(self):
        attachment = Attachment(url="https://files.example/cat.png", type="image", name="cat.png")

        message = await self.service.send_message(self.conversation_id, ALICE, "", attachment)

        self.assertEqual(message.content, "")
        self.assertEqual(message.attachment, attachment)
        self.assertEqual(message.preview, "Sent an image")

    async def test_file_attachment_preview(self):
        attachment = Attachment(url="https://files.example/notes.pdf", name="notes.pdf")

        message = await self.service.send_message(self.conversation_id, BOB, "", attachment)

        self.assertEqual(message.attachment.type, "file")
        self.assertEqual(message.preview, "Sent a file")

    async def test_send_bumps_last_activity(self):
        before = await ConversationRepository(self.db).get(self.conversation_id)

        await self.service.send_message(self.conversation_id, ALICE, "first")
        second = await self.service.send_message(self.conversation_id, BOB, "second")

        after = await ConversationRepository(self.db).get(self.conversation_id)
        self.assertGreater(after["last_message_at"], before["last_message_at"])
        self.assertEqual(after["last_message_preview"], "second")
        self.assertEqual(after["last_message_at"], second.created_at.replace(tzinfo=None))

    async def test_only_participants_can_send(self):
        with self.assertRaises(NotParticipant):
            await self.service.send_message(self.conversation_id, CAROL, "let me in")

    async def test_unknown_conversation(self):
        for conversation_id in ("not-an-id", "0123456789abcdef01234567"):
            with self.subTest(conversation_id=conversation_id):
                with self.assertRaises(ConversationNotFound):
                    await self.service.send_message(conversation_id, ALICE, "hi")

    async def test_list_is_ascending_with_sender_profiles(self):
        for i, sender in enumerate([ALICE, BOB, ALICE, BOB]):
            await self.service.send_message(self.conversation_id, sender, f"m{i}")

        messages, next_cursor = await self.service.list_messages(self.conversation_id, BOB)

        self.assertEqual([m.content for m in messages], ["m0", "m1", "m2", "m3"])
        self.assertEqual([m.sender.username for m in messages], ["alice", "bob", "alice", "bob"])
        self.assertEqual(messages, sorted(messages, key=lambda m: m.sort_key))
        self.assertIsNone(next_cursor)

    async def test_pages_walk_back_in_time(self):
        for i in range(5):
            await self.service.send_message(self.conversation_id, ALICE, f"m{i}")

        newest, cursor = await self.service.list_messages(self.conversation_id, BOB, limit=2)
        middle, cursor = await self.service.list_messages(self.conversation_id, BOB, limit=2, cursor=cursor)
        oldest, cursor = await self.service.list_messages(self.conversation_id, BOB, limit=2, cursor=cursor)

        self.assertEqual([m.content for m in newest], ["m3", "m4"])
        self.assertEqual([m.content for m in middle], ["m1", "m2"])
        self.assertEqual([m.content for m in oldest], ["m0"])
        self.assertIsNone(cursor)

    async def test_unknown_sender_gets_placeholder(self):
        conversation_id = await self.service.resolve_conversation(ALICE, CAROL)
        await self.service.send_message(conversation_id, CAROL, "who am i")

        messages, _ = await self.service.list_messages(conversation_id, ALICE)

        self.assertEqual(messages[0].sender.display_name, "Unknown User")
        self.assertEqual(messages[0].sender.username, "unknown")
        self.assertEqual(messages[0].sender.user_id, CAROL)

    async def test_listing_marks_read_only_when_asked(self):
        await self.service.send_message(self.conversation_id, ALICE, "hi")

        await self.service.list_messages(self.conversation_id, BOB)
        self.assertEqual(await self.service.unread_count(self.conversation_id, BOB), 1)

        await self.service.list_messages(self.conversation_id, BOB, mark_read=True)
        self.assertEqual(await self.service.unread_count(self.conversation_id, BOB), 0)

    async def test_iter_messages_is_ascending(self):
        for i in range(3):
            await self.service.send_message(self.conversation_id, BOB, f"m{i}")

        contents = [m.content async for m in self.service.iter_messages(self.conversation_id, ALICE)]

        self.assertEqual(contents, ["m0", "m1", "m2"])

    async def test_stored_message_survives_a_failed_activity_update(self):
        events = []

        async def collect(raw):
            events.append(raw)

        subscription = await self.service.bus.subscribe(conversation_channel(self.conversation_id), collect)
        task = asyncio.create_task(subscription.run())
        try:
            with mock.patch.object(
                self.service._conversation_repo, "update_on_new_message", side_effect=AutoReconnect("primary stepped down")
            ):
                with self.assertLogs("directmsg.services.chat_service", level="WARNING"):
                    message = await self.service.send_message(self.conversation_id, ALICE, "hi")
            await wait_for(lambda: len(events) == 1)
        finally:
            await subscription.cancel()
            await task

        self.assertEqual(message.content, "hi")
        self.assertEqual(await self.db["messages"].count_documents({}), 1)
        self.assertIn(message.id, events[0])

    async def test_storage_failure_is_retryable(self):
        with mock.patch.object(
            self.service._message_repo, "save_message", side_effect=AutoReconnect("connection reset")
        ):
            with self.assertRaises(StorageUnavailable):
                await self.service.send_message(self.conversation_id, ALICE, "hi")

        # the caller retries and succeeds
        message = await self.service.send_message(self.conversation_id, ALICE, "hi")
        self.assertEqual(message.content, "hi")
