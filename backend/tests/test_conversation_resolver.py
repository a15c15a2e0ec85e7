import asyncio
import unittest
from unittest import mock

from directmsg.errors import InvalidUserId
from directmsg.repositories.conversation_repository import ConversationRepository, pair_key

from tests.helpers import ALICE, BOB, CAROL, make_db, make_service, prepare_db


class ConversationResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = make_db()
        await prepare_db(self.db)
        self.service = make_service(self.db)

    async def test_same_conversation_for_both_orders(self):
        first = await self.service.resolve_conversation(ALICE, BOB)
        again = await self.service.resolve_conversation(ALICE, BOB)
        reversed_order = await self.service.resolve_conversation(BOB, ALICE)

        self.assertEqual(first, again)
        self.assertEqual(first, reversed_order)
        self.assertEqual(await self.db["conversations"].count_documents({}), 1)

    async def test_distinct_pairs_get_distinct_conversations(self):
        ab = await self.service.resolve_conversation(ALICE, BOB)
        ac = await self.service.resolve_conversation(ALICE, CAROL)

        self.assertNotEqual(ab, ac)
        self.assertEqual(await self.db["conversations"].count_documents({}), 2)

    async def test_conversation_is_created_with_both_participants(self):
        conversation_id = await self.service.resolve_conversation(BOB, ALICE)

        doc = await ConversationRepository(self.db).get(conversation_id)
        self.assertEqual(doc["participants"], sorted([ALICE, BOB]))
        self.assertEqual(doc["pair_key"], pair_key(ALICE, BOB))
        self.assertEqual(set(doc["joined_at"]), {ALICE, BOB})
        self.assertEqual(doc["last_read_at"], {})

    async def test_concurrent_resolution_creates_one_conversation(self):
        calls = [self.service.resolve_conversation(ALICE, BOB) for _ in range(5)]
        calls += [self.service.resolve_conversation(BOB, ALICE) for _ in range(5)]

        ids = await asyncio.gather(*calls)

        self.assertEqual(len(set(ids)), 1)
        self.assertEqual(await self.db["conversations"].count_documents({}), 1)

    async def test_losing_the_creation_race_returns_the_winner(self):
        repo = ConversationRepository(self.db)
        winner = await repo.get_or_create_one_to_one(ALICE, BOB)

        # the lookup misses as if the other session had not committed yet
        with mock.patch.object(repo, "find_by_pair", side_effect=[None, winner]) as lookup:
            result = await repo.get_or_create_one_to_one(BOB, ALICE)

        self.assertEqual(result["_id"], winner["_id"])
        self.assertEqual(lookup.await_count, 2)
        self.assertEqual(await self.db["conversations"].count_documents({}), 1)

    async def test_two_sessions_resolve_to_the_same_id(self):
        session_a = make_service(self.db)
        session_b = make_service(self.db)

        from_a, from_b = await asyncio.gather(
            session_a.resolve_conversation(ALICE, BOB),
            session_b.resolve_conversation(BOB, ALICE),
        )

        self.assertEqual(from_a, from_b)

    async def test_ids_containing_separators_do_not_share_a_conversation(self):
        first = await self.service.resolve_conversation("a:b", "c")
        second = await self.service.resolve_conversation("a", "b:c")

        self.assertNotEqual(first, second)
        repo = ConversationRepository(self.db)
        self.assertEqual((await repo.get(first))["participants"], ["a:b", "c"])
        self.assertEqual((await repo.get(second))["participants"], ["a", "b:c"])
        # both pairs can use their own conversation
        await self.service.send_message(second, "b:c", "hello")

    def test_pair_key_is_unambiguous(self):
        self.assertEqual(pair_key("u2", "u1"), pair_key("u1", "u2"))
        self.assertNotEqual(pair_key("a:b", "c"), pair_key("a", "b:c"))
        self.assertNotEqual(pair_key('a","b', "c"), pair_key("a", 'b","c'))

    async def test_rejects_conversation_with_self(self):
        with self.assertRaises(InvalidUserId):
            await self.service.resolve_conversation(ALICE, ALICE)

    async def test_rejects_ids_unusable_as_field_names(self):
        for bad in ("", "u.alice", "$where"):
            with self.subTest(user_id=bad):
                with self.assertRaises(InvalidUserId):
                    await self.service.resolve_conversation(bad, BOB)
        self.assertEqual(await self.db["conversations"].count_documents({}), 0)
