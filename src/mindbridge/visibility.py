from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import FrozenSet, List

from .circles import SQLiteCircleStore
from .entries import SQLiteEntryStore
from .models import ALL_VISIBILITIES, PUBLIC_AND_CIRCLES, PUBLIC_ONLY, Entry, Visibility


@dataclass
class VisibleEntries:
    moods: List[Entry] = field(default_factory=list)
    journals: List[Entry] = field(default_factory=list)

    def to_api_dict(self) -> dict:
        return {
            "moods": [entry.to_api_dict() for entry in self.moods],
            "journals": [entry.to_api_dict() for entry in self.journals],
        }


class VisibilityResolver:
    """Decides which of an owner's entries a viewer may see.

    Membership is read fresh on every call; nothing is cached, so a user who
    leaves a circle loses access to ``Circles`` entries on the next read.
    """

    def __init__(self, circles: SQLiteCircleStore, entries: SQLiteEntryStore) -> None:
        self._circles = circles
        self._entries = entries

    async def allowed(
        self, owner_id: str, viewer_id: str | None, circle_id: str | None = None
    ) -> FrozenSet[Visibility]:
        if viewer_id is None or viewer_id == "":
            return PUBLIC_ONLY
        if viewer_id == owner_id:
            return ALL_VISIBILITIES
        if circle_id:
            related = await asyncio.to_thread(self._circles.both_members, circle_id, owner_id, viewer_id)
        else:
            related = await asyncio.to_thread(self._circles.share_any_circle, owner_id, viewer_id)
        return PUBLIC_AND_CIRCLES if related else PUBLIC_ONLY

    async def can_view(self, entry: Entry, viewer_id: str | None, circle_id: str | None = None) -> bool:
        return entry.visibility in await self.allowed(entry.owner_id, viewer_id, circle_id)

    async def visible_entries(
        self, owner_id: str, viewer_id: str | None, circle_id: str | None = None
    ) -> VisibleEntries:
        allowed = await self.allowed(owner_id, viewer_id, circle_id)
        moods = await asyncio.to_thread(self._entries.list_for_owner, owner_id, "mood", allowed)
        journals = await asyncio.to_thread(self._entries.list_for_owner, owner_id, "journal", allowed)
        return VisibleEntries(moods=moods, journals=journals)

    async def visible_of_kind(
        self, owner_id: str, kind: str, viewer_id: str | None, circle_id: str | None = None
    ) -> List[Entry]:
        allowed = await self.allowed(owner_id, viewer_id, circle_id)
        return await asyncio.to_thread(self._entries.list_for_owner, owner_id, kind, allowed)
