import itertools
import unittest

from mindbridge.circles import SQLiteCircleStore
from mindbridge.entries import SQLiteEntryStore
from mindbridge.models import ALL_VISIBILITIES, PUBLIC_AND_CIRCLES, PUBLIC_ONLY, Visibility
from mindbridge.sqlite_backend import SQLiteBackend
from mindbridge.visibility import VisibilityResolver


class VisibilityResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = SQLiteBackend()
        clock = itertools.count(1_000, 10).__next__
        self.circles = SQLiteCircleStore(self.backend, now_func=clock)
        self.entries = SQLiteEntryStore(self.backend, now_func=clock)
        self.resolver = VisibilityResolver(self.circles, self.entries)

        self.shared = self.circles.create("Shared Circle", "", "owner")
        self.circles.join(self.shared.circle_id, "friend")
        self.elsewhere = self.circles.create("Friend Only", "", "friend")

        self.private = self.entries.create("mood", "owner", "p", visibility=Visibility.PRIVATE)
        self.circled = self.entries.create("mood", "owner", "c", visibility=Visibility.CIRCLES)
        self.public = self.entries.create("mood", "owner", "x", visibility=Visibility.PUBLIC)

    async def asyncTearDown(self):
        self.backend.close()

    async def _visible_ids(self, viewer, circle_id=None):
        visible = await self.resolver.visible_entries("owner", viewer, circle_id)
        return {entry.entry_id for entry in visible.moods}

    async def test_owner_sees_everything(self):
        self.assertEqual(await self.resolver.allowed("owner", "owner"), ALL_VISIBILITIES)
        self.assertEqual(
            await self._visible_ids("owner"),
            {self.private.entry_id, self.circled.entry_id, self.public.entry_id},
        )

    async def test_circle_mate_sees_circles_and_public(self):
        self.assertEqual(await self.resolver.allowed("owner", "friend"), PUBLIC_AND_CIRCLES)
        self.assertEqual(await self._visible_ids("friend"), {self.circled.entry_id, self.public.entry_id})

    async def test_stranger_and_anonymous_see_public_only(self):
        self.assertEqual(await self._visible_ids("stranger"), {self.public.entry_id})
        self.assertEqual(await self._visible_ids(None), {self.public.entry_id})
        self.assertEqual(await self.resolver.allowed("owner", ""), PUBLIC_ONLY)

    async def test_circle_scope_requires_both_in_that_circle(self):
        in_scope = await self._visible_ids("friend", self.shared.circle_id)
        self.assertEqual(in_scope, {self.circled.entry_id, self.public.entry_id})

        out_of_scope = await self._visible_ids("friend", self.elsewhere.circle_id)
        self.assertEqual(out_of_scope, {self.public.entry_id})

    async def test_owner_ignores_circle_scope(self):
        scoped = await self.resolver.allowed("owner", "owner", self.elsewhere.circle_id)
        self.assertEqual(scoped, ALL_VISIBILITIES)

    async def test_leaving_revokes_access_on_next_read(self):
        self.assertTrue(await self.resolver.can_view(self.circled, "friend"))
        self.circles.leave(self.shared.circle_id, "friend")
        self.assertFalse(await self.resolver.can_view(self.circled, "friend"))
        self.assertTrue(await self.resolver.can_view(self.public, "friend"))

    async def test_pending_member_is_not_related(self):
        self.circles.update(self.shared.circle_id, "owner", {"visibility": "private"})
        self.circles.join(self.shared.circle_id, "hopeful")
        self.assertEqual(await self.resolver.allowed("owner", "hopeful"), PUBLIC_ONLY)

    async def test_visible_set_is_always_within_allowed_tags(self):
        self.entries.create("journal", "owner", "j", visibility=Visibility.CIRCLES)
        for viewer in ("owner", "friend", "stranger", None):
            allowed = await self.resolver.allowed("owner", viewer)
            visible = await self.resolver.visible_entries("owner", viewer)
            for entry in visible.moods + visible.journals:
                self.assertIn(entry.visibility, allowed)
            self.assertTrue(all(e.kind == "journal" for e in visible.journals))


if __name__ == "__main__":
    unittest.main()
