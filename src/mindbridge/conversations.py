from __future__ import annotations

import asyncio
from typing import List

from .messages import SQLiteMessageStore
from .models import ConversationSummary, Message
from .profiles import SQLiteProfileStore


class ConversationAggregator:
    """Builds the "recent chats" list from the message log.

    The store returns one head message per conversation pair and the unread
    counts grouped by sender, so a dashboard load does not scan the whole log.
    """

    def __init__(self, messages: SQLiteMessageStore, profiles: SQLiteProfileStore) -> None:
        self._messages = messages
        self._profiles = profiles

    async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        heads = await asyncio.to_thread(self._messages.latest_per_partner, user_id)
        if not heads:
            return []
        unread = await asyncio.to_thread(self._messages.unread_counts, user_id)
        partner_ids = [head.other_party(user_id) for head in heads]
        profiles = await asyncio.to_thread(self._profiles.lookup, partner_ids)
        summaries = [
            ConversationSummary(
                partner=profiles.get(partner_id),
                partner_id=partner_id,
                last_message=head,
                unread_count=unread.get(partner_id, 0),
            )
            for partner_id, head in zip(partner_ids, heads)
        ]
        summaries.sort(key=lambda s: (s.last_message_at, s.last_message.msg_id), reverse=True)
        return summaries

    async def mark_read(self, user_id: str, partner_id: str) -> int:
        """Mark everything ``partner_id`` sent to ``user_id`` as read; safe to repeat."""

        return await asyncio.to_thread(self._messages.mark_conversation_read, user_id, partner_id)

    async def history(self, first_id: str, second_id: str) -> List[Message]:
        return await asyncio.to_thread(self._messages.history, first_id, second_id)
