import itertools
import unittest

from mindbridge.circles import CIRCLE_PRIVATE, JOINED, REQUESTED, SQLiteCircleStore
from mindbridge.errors import Conflict, NotFound, Unauthorized
from mindbridge.sqlite_backend import SQLiteBackend


class CircleStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = SQLiteBackend()
        self.circles = SQLiteCircleStore(self.backend, now_func=itertools.count(1_000, 10).__next__)
        self.public = self.circles.create("Morning Walkers", "walks", "owner", tags=["outdoors", "mood"])
        self.private = self.circles.create("Quiet Room", "", "owner", visibility=CIRCLE_PRIVATE)

    def tearDown(self) -> None:
        self.backend.close()

    def test_creator_is_first_member_and_admin(self):
        circle = self.circles.get(self.public.circle_id)
        self.assertEqual(circle.members, ["owner"])
        self.assertEqual(circle.admins, ["owner"])
        self.assertTrue(self.circles.is_admin(circle.circle_id, "owner"))

    def test_create_validates_name(self):
        with self.assertRaises(Conflict):
            self.circles.create("Morning Walkers", "", "someone")
        with self.assertRaises(ValueError):
            self.circles.create("ab", "", "someone")
        with self.assertRaises(ValueError):
            self.circles.create("Hidden Place", "", "someone", visibility="secret")

    def test_join_public_and_conflict_on_repeat(self):
        self.assertEqual(self.circles.join(self.public.circle_id, "u1"), JOINED)
        self.assertTrue(self.circles.is_member(self.public.circle_id, "u1"))
        with self.assertRaises(Conflict):
            self.circles.join(self.public.circle_id, "u1")
        with self.assertRaises(NotFound):
            self.circles.join("cir_missing", "u1")

    def test_private_join_is_a_pending_request(self):
        self.assertEqual(self.circles.join(self.private.circle_id, "u1"), REQUESTED)
        self.assertEqual(self.circles.join(self.private.circle_id, "u1"), REQUESTED)
        self.assertFalse(self.circles.is_member(self.private.circle_id, "u1"))
        self.assertEqual(self.circles.get(self.private.circle_id).pending_members, ["u1"])

        with self.assertRaises(Unauthorized):
            self.circles.decide_request(self.private.circle_id, "u2", "u1", True)

        self.circles.decide_request(self.private.circle_id, "owner", "u1", True)
        self.assertTrue(self.circles.is_member(self.private.circle_id, "u1"))
        with self.assertRaises(NotFound):
            self.circles.decide_request(self.private.circle_id, "owner", "u1", True)

    def test_rejected_request_is_removed(self):
        self.circles.join(self.private.circle_id, "u1")
        self.circles.decide_request(self.private.circle_id, "owner", "u1", False)

        self.assertIsNone(self.circles.role(self.private.circle_id, "u1"))
        self.assertEqual(self.circles.get(self.private.circle_id).pending_members, [])

    def test_kick_and_promote(self):
        self.circles.join(self.public.circle_id, "u1")
        self.circles.join(self.public.circle_id, "u2")

        with self.assertRaises(Unauthorized):
            self.circles.kick(self.public.circle_id, "u1", "u2")
        self.circles.promote(self.public.circle_id, "owner", "u1")
        self.assertTrue(self.circles.is_admin(self.public.circle_id, "u1"))

        self.circles.kick(self.public.circle_id, "u1", "u2")
        self.assertFalse(self.circles.is_member(self.public.circle_id, "u2"))
        with self.assertRaises(Unauthorized):
            self.circles.kick(self.public.circle_id, "u1", "owner")
        with self.assertRaises(NotFound):
            self.circles.promote(self.public.circle_id, "owner", "stranger")

    def test_leave_and_creator_stays(self):
        self.circles.join(self.public.circle_id, "u1")
        self.circles.leave(self.public.circle_id, "u1")
        self.assertFalse(self.circles.is_member(self.public.circle_id, "u1"))

        with self.assertRaises(Unauthorized):
            self.circles.leave(self.public.circle_id, "owner")

    def test_update_requires_admin_and_unique_name(self):
        with self.assertRaises(Unauthorized):
            self.circles.update(self.public.circle_id, "u1", {"description": "x"})

        updated = self.circles.update(
            self.public.circle_id,
            "owner",
            {"description": "early walks", "allowsAnonymous": True, "tags": ["sun"], "unknown": 1},
        )
        self.assertEqual(updated.description, "early walks")
        self.assertTrue(updated.allows_anonymous)
        self.assertEqual(updated.tags, ["sun"])

        with self.assertRaises(Conflict):
            self.circles.update(self.public.circle_id, "owner", {"name": "Quiet Room"})

    def test_update_rejects_null_and_mistyped_fields(self):
        invalid = [
            {"description": None},
            {"coverImage": 3},
            {"name": None},
            {"allowsAnonymous": "yes"},
            {"tags": "sun"},
        ]
        for updates in invalid:
            with self.subTest(updates=updates):
                with self.assertRaises(ValueError):
                    self.circles.update(self.public.circle_id, "owner", updates)
        self.assertEqual(self.circles.get(self.public.circle_id).description, "walks")

    def test_list_search_and_tag(self):
        names = [c.name for c in self.circles.list(search="morning")]
        self.assertEqual(names, ["Morning Walkers"])
        self.assertEqual([c.name for c in self.circles.list(tag="outdoors")], ["Morning Walkers"])
        self.assertEqual(len(self.circles.list()), 2)

    def test_shared_membership_queries(self):
        self.circles.join(self.public.circle_id, "u1")
        self.circles.join(self.private.circle_id, "u2")

        self.assertTrue(self.circles.share_any_circle("owner", "u1"))
        self.assertFalse(self.circles.share_any_circle("u1", "u2"))
        self.assertTrue(self.circles.both_members(self.public.circle_id, "u1", "owner"))
        self.assertFalse(self.circles.both_members(self.private.circle_id, "u2", "owner"))
        self.assertEqual(self.circles.member_ids(self.public.circle_id), ["owner", "u1"])


if __name__ == "__main__":
    unittest.main()
