import itertools
import unittest

from mindbridge.conversations import ConversationAggregator
from mindbridge.messages import SQLiteMessageStore
from mindbridge.profiles import SQLiteProfileStore
from mindbridge.sqlite_backend import SQLiteBackend


class ConversationAggregatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = SQLiteBackend()
        clock = itertools.count(1_000, 10).__next__
        self.profiles = SQLiteProfileStore(self.backend, now_func=clock)
        self.messages = SQLiteMessageStore(self.backend, now_func=clock)
        self.aggregator = ConversationAggregator(self.messages, self.profiles)
        self.alice = self.profiles.create("alice").user_id
        self.bob = self.profiles.create("bob").user_id
        self.cara = self.profiles.create("cara").user_id

    async def asyncTearDown(self):
        self.backend.close()

    async def test_no_messages_means_no_conversations(self):
        self.assertEqual(await self.aggregator.list_conversations(self.alice), [])

    async def test_one_entry_per_partner_with_unread_counts(self):
        self.messages.append(self.bob, self.alice, "hi")
        self.messages.append(self.alice, self.bob, "hey")
        self.messages.append(self.bob, self.alice, "you there?")
        self.messages.append(self.cara, self.alice, "lunch?")
        self.messages.append(self.bob, self.cara, "not for alice")

        summaries = await self.aggregator.list_conversations(self.alice)

        self.assertEqual([s.partner_id for s in summaries], [self.cara, self.bob])
        by_partner = {s.partner_id: s.to_api_dict() for s in summaries}
        self.assertEqual(by_partner[self.bob]["lastMessage"], "you there?")
        self.assertEqual(by_partner[self.bob]["lastMessageSenderId"], self.bob)
        self.assertEqual(by_partner[self.bob]["unreadCount"], 2)
        self.assertEqual(by_partner[self.bob]["username"], "bob")
        self.assertEqual(by_partner[self.cara]["unreadCount"], 1)

        bob_view = await self.aggregator.list_conversations(self.bob)
        self.assertEqual({s.partner_id for s in bob_view}, {self.alice, self.cara})
        alice_for_bob = next(s for s in bob_view if s.partner_id == self.alice)
        self.assertEqual(alice_for_bob.unread_count, 1)

    async def test_mark_read_is_idempotent(self):
        self.messages.append(self.bob, self.alice, "one")
        self.messages.append(self.bob, self.alice, "two")
        self.messages.append(self.alice, self.bob, "reply")

        self.assertEqual(await self.aggregator.mark_read(self.alice, self.bob), 2)
        self.assertEqual(await self.aggregator.mark_read(self.alice, self.bob), 0)

        summaries = await self.aggregator.list_conversations(self.alice)
        self.assertEqual(summaries[0].unread_count, 0)
        bob_view = await self.aggregator.list_conversations(self.bob)
        self.assertEqual(bob_view[0].unread_count, 1)

    async def test_result_does_not_depend_on_insertion_order(self):
        timeline = [
            (self.bob, self.alice, "b1", 10),
            (self.alice, self.cara, "c1", 20),
            (self.bob, self.alice, "b2", 30),
            (self.cara, self.alice, "c2", 25),
        ]
        forward = await self._aggregate(timeline)
        backward = await self._aggregate(list(reversed(timeline)))

        self.assertEqual(forward, backward)
        self.assertEqual(forward, [(self.bob, "b2", 30, 2), (self.cara, "c2", 25, 1)])

    async def _aggregate(self, timeline):
        backend = SQLiteBackend()
        try:
            messages = SQLiteMessageStore(backend)
            aggregator = ConversationAggregator(messages, SQLiteProfileStore(backend))
            for sender, receiver, text, at in timeline:
                messages.append(sender, receiver, text, created_at_ms=at)
            summaries = await aggregator.list_conversations(self.alice)
        finally:
            backend.close()
        return [(s.partner_id, s.last_message.text, s.last_message_at, s.unread_count) for s in summaries]

    async def test_unknown_partner_has_no_profile(self):
        self.messages.append("usr_ghost", self.alice, "boo")

        summary = (await self.aggregator.list_conversations(self.alice))[0]
        self.assertIsNone(summary.partner)
        self.assertIsNone(summary.to_api_dict()["username"])

    async def test_history_spans_both_directions(self):
        self.messages.append(self.alice, self.bob, "a")
        self.messages.append(self.bob, self.alice, "b")

        history = await self.aggregator.history(self.bob, self.alice)
        self.assertEqual([m.text for m in history], ["a", "b"])


if __name__ == "__main__":
    unittest.main()
