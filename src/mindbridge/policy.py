from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from .circles import SQLiteCircleStore
from .errors import Unauthorized
from .models import Answer, Circle, Entry, Post, Question
from .visibility import VisibilityResolver


ENTRY_VIEW = "entry.view"
ENTRY_MODIFY = "entry.modify"
CIRCLE_POST = "circle.post"
POST_MODIFY = "post.modify"
POST_DELETE = "post.delete"
POST_MODERATE = "post.moderate"
QUESTION_MODIFY = "question.modify"
ANSWER_DELETE = "answer.delete"

Check = Callable[[str, Any], Awaitable[bool]]


class Policy:
    """Capability checks: may ``actor`` perform ``action`` on ``resource``?

    ``actor`` is ``None`` for anonymous callers, which may only view public
    entries. Circle administration (rename, kick, promote, requests) is
    enforced by the circle store itself.
    """

    def __init__(self, circles: SQLiteCircleStore, resolver: VisibilityResolver) -> None:
        self._circles = circles
        self._resolver = resolver
        self._checks: Dict[str, Check] = {
            ENTRY_MODIFY: self._owns_entry,
            CIRCLE_POST: self._is_circle_member,
            POST_MODIFY: self._authored_post,
            POST_DELETE: self._may_delete_post,
            POST_MODERATE: self._moderates_post,
            QUESTION_MODIFY: self._authored_question,
            ANSWER_DELETE: self._may_delete_answer,
        }

    async def can(self, actor_id: str | None, action: str, resource: Any) -> bool:
        if action == ENTRY_VIEW:
            return await self._resolver.can_view(resource, actor_id)
        check = self._checks.get(action)
        if check is None:
            raise ValueError(f"unknown action: {action}")
        if not actor_id:
            return False
        return await check(actor_id, resource)

    async def require(self, actor_id: str | None, action: str, resource: Any) -> None:
        if not await self.can(actor_id, action, resource):
            raise Unauthorized(f"not allowed: {action}")

    async def _owns_entry(self, actor_id: str, entry: Entry) -> bool:
        return entry.owner_id == actor_id

    async def _is_circle_member(self, actor_id: str, circle: Circle) -> bool:
        return await asyncio.to_thread(self._circles.is_member, circle.circle_id, actor_id)

    async def _authored_post(self, actor_id: str, post: Post) -> bool:
        return post.author_id == actor_id

    async def _may_delete_post(self, actor_id: str, post: Post) -> bool:
        if post.author_id == actor_id:
            return True
        return await self._moderates_post(actor_id, post)

    async def _moderates_post(self, actor_id: str, post: Post) -> bool:
        return await asyncio.to_thread(self._circles.is_admin, post.circle_id, actor_id)

    async def _authored_question(self, actor_id: str, question: Question) -> bool:
        return question.author_id == actor_id

    async def _may_delete_answer(self, actor_id: str, resource: tuple[Question, Answer]) -> bool:
        question, answer = resource
        return actor_id in (answer.author_id, question.author_id)
