from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from . import policy as actions
from .circles import SQLiteCircleStore
from .dispatch import DispatchReport, Dispatcher
from .entries import SQLiteEntryStore
from .errors import InvalidRequest, NotFound, Unauthorized
from .messages import SQLiteMessageStore
from .models import (
    NOTIFY_ANSWER,
    NOTIFY_COMMENT,
    NOTIFY_LIKE,
    NOTIFY_POST,
    NOTIFY_QUESTION,
    Answer,
    Comment,
    Entry,
    Message,
    Notification,
    Post,
    Question,
    Visibility,
)
from .policy import Policy
from .posts import SQLitePostStore
from .profiles import SQLiteProfileStore
from .questions import SQLiteQuestionStore
from .visibility import VisibilityResolver, VisibleEntries


ANONYMOUS_NAME = "Anonymous"


def _require_actor(actor_id: str | None) -> str:
    if not actor_id:
        raise Unauthorized("an acting user is required")
    return actor_id


class CommunityService:
    """Entry, post, Q&A and messaging operations with their side effects.

    Every mutation checks the acting user against :class:`Policy` and, where
    the action concerns other people, hands a notification to the
    :class:`Dispatcher`.
    """

    def __init__(
        self,
        *,
        profiles: SQLiteProfileStore,
        entries: SQLiteEntryStore,
        circles: SQLiteCircleStore,
        posts: SQLitePostStore,
        questions: SQLiteQuestionStore,
        messages: SQLiteMessageStore,
        resolver: VisibilityResolver,
        policy: Policy,
        dispatcher: Dispatcher,
    ) -> None:
        self.profiles = profiles
        self.entries = entries
        self.circles = circles
        self.posts = posts
        self.questions = questions
        self.messages = messages
        self.resolver = resolver
        self.policy = policy
        self.dispatcher = dispatcher

    # entries

    async def create_entry(
        self,
        actor_id: str | None,
        kind: str,
        content: str,
        *,
        visibility: Visibility = Visibility.PRIVATE,
        attributes: Dict[str, Any] | None = None,
    ) -> Entry:
        owner_id = _require_actor(actor_id)
        return await asyncio.to_thread(
            self.entries.create, kind, owner_id, content, visibility=visibility, attributes=attributes
        )

    async def get_entry(self, entry_id: str, viewer_id: str | None) -> Entry:
        entry = await asyncio.to_thread(self.entries.get, entry_id)
        # Hidden entries are indistinguishable from missing ones.
        if not await self.policy.can(viewer_id, actions.ENTRY_VIEW, entry):
            raise NotFound("entry not found")
        return entry

    async def update_entry(
        self,
        actor_id: str | None,
        entry_id: str,
        *,
        content: str | None = None,
        visibility: Visibility | None = None,
        attributes: Dict[str, Any] | None = None,
    ) -> Entry:
        entry = await asyncio.to_thread(self.entries.get, entry_id)
        await self.policy.require(actor_id, actions.ENTRY_MODIFY, entry)
        return await asyncio.to_thread(
            self.entries.update, entry_id, content=content, visibility=visibility, attributes=attributes
        )

    async def delete_entry(self, actor_id: str | None, entry_id: str) -> None:
        entry = await asyncio.to_thread(self.entries.get, entry_id)
        await self.policy.require(actor_id, actions.ENTRY_MODIFY, entry)
        await asyncio.to_thread(self.entries.delete, entry_id)

    async def list_entries(
        self, owner_id: str, kind: str, viewer_id: str | None, circle_id: str | None = None
    ) -> List[Entry]:
        return await self.resolver.visible_of_kind(owner_id, kind, viewer_id, circle_id)

    async def visible_entries(
        self, owner_id: str, viewer_id: str | None, circle_id: str | None = None
    ) -> VisibleEntries:
        return await self.resolver.visible_entries(owner_id, viewer_id, circle_id)

    # posts

    async def create_post(
        self, actor_id: str | None, circle_id: str, content: str, *, is_anonymous: bool = False
    ) -> tuple[Post, DispatchReport]:
        author_id = _require_actor(actor_id)
        circle = await asyncio.to_thread(self.circles.get, circle_id)
        await self.policy.require(author_id, actions.CIRCLE_POST, circle)
        anonymous = bool(is_anonymous) and circle.allows_anonymous
        post = await asyncio.to_thread(
            self.posts.create, circle_id, author_id, content, is_anonymous=anonymous
        )
        sender_name = ANONYMOUS_NAME if anonymous else await self.display_name(author_id)
        report = await self.dispatcher.broadcast(
            circle.members,
            exclude_user_id=author_id,
            sender_name=sender_name,
            type=NOTIFY_POST,
            message=f"{sender_name} posted in {circle.name}",
        )
        return post, report

    async def list_posts(self, circle_id: str) -> List[Post]:
        await asyncio.to_thread(self.circles.get, circle_id)
        return await asyncio.to_thread(self.posts.list_for_circle, circle_id)

    async def edit_post(self, actor_id: str | None, post_id: str, content: str) -> Post:
        post = await asyncio.to_thread(self.posts.get, post_id)
        await self.policy.require(actor_id, actions.POST_MODIFY, post)
        return await asyncio.to_thread(self.posts.update, post_id, content)

    async def delete_post(self, actor_id: str | None, post_id: str) -> None:
        post = await asyncio.to_thread(self.posts.get, post_id)
        await self.policy.require(actor_id, actions.POST_DELETE, post)
        await asyncio.to_thread(self.posts.delete, post_id)

    async def toggle_like(self, actor_id: str | None, post_id: str) -> bool:
        user_id = _require_actor(actor_id)
        post = await asyncio.to_thread(self.posts.get, post_id)
        liked = await asyncio.to_thread(self.posts.toggle_like, post_id, user_id)
        if liked and post.author_id != user_id:
            name = await self.display_name(user_id)
            await self.dispatcher.try_notify(
                post.author_id, sender_name=name, type=NOTIFY_LIKE, message=f"{name} liked your post"
            )
        return liked

    async def comment(self, actor_id: str | None, post_id: str, text: str) -> Comment:
        user_id = _require_actor(actor_id)
        post = await asyncio.to_thread(self.posts.get, post_id)
        comment = await asyncio.to_thread(self.posts.add_comment, post_id, user_id, text)
        if post.author_id != user_id:
            name = await self.display_name(user_id)
            await self.dispatcher.try_notify(
                post.author_id,
                sender_name=name,
                type=NOTIFY_COMMENT,
                message=f"{name} commented on your post",
            )
        return comment

    async def report_post(self, actor_id: str | None, post_id: str, reason: str) -> None:
        user_id = _require_actor(actor_id)
        if not reason or not reason.strip():
            raise InvalidRequest("reason required")
        await asyncio.to_thread(self.posts.report, post_id, user_id, reason)

    async def dismiss_reports(self, actor_id: str | None, post_id: str) -> None:
        post = await asyncio.to_thread(self.posts.get, post_id)
        await self.policy.require(actor_id, actions.POST_MODERATE, post)
        await asyncio.to_thread(self.posts.dismiss_reports, post_id)

    # questions

    async def ask(
        self, actor_id: str | None, circle_id: str, title: str, body: str
    ) -> tuple[Question, DispatchReport]:
        author_id = _require_actor(actor_id)
        circle = await asyncio.to_thread(self.circles.get, circle_id)
        await self.policy.require(author_id, actions.CIRCLE_POST, circle)
        question = await asyncio.to_thread(self.questions.create, circle_id, author_id, title, body)
        name = await self.display_name(author_id)
        report = await self.dispatcher.broadcast(
            circle.members,
            exclude_user_id=author_id,
            sender_name=name,
            type=NOTIFY_QUESTION,
            message=f"{name} asked in {circle.name}: {title}",
        )
        return question, report

    async def list_questions(self, circle_id: str) -> List[Question]:
        await asyncio.to_thread(self.circles.get, circle_id)
        return await asyncio.to_thread(self.questions.list_for_circle, circle_id)

    async def edit_question(
        self, actor_id: str | None, question_id: str, *, title: str | None = None, body: str | None = None
    ) -> Question:
        question = await asyncio.to_thread(self.questions.get, question_id)
        await self.policy.require(actor_id, actions.QUESTION_MODIFY, question)
        return await asyncio.to_thread(self.questions.update, question_id, title=title, body=body)

    async def delete_question(self, actor_id: str | None, question_id: str) -> None:
        question = await asyncio.to_thread(self.questions.get, question_id)
        await self.policy.require(actor_id, actions.QUESTION_MODIFY, question)
        await asyncio.to_thread(self.questions.delete, question_id)

    async def answer(self, actor_id: str | None, question_id: str, text: str) -> Answer:
        user_id = _require_actor(actor_id)
        question = await asyncio.to_thread(self.questions.get, question_id)
        answer = await asyncio.to_thread(self.questions.add_answer, question_id, user_id, text)
        if question.author_id != user_id:
            name = await self.display_name(user_id)
            await self.dispatcher.try_notify(
                question.author_id,
                sender_name=name,
                type=NOTIFY_ANSWER,
                message=f"{name} answered: {question.title}",
            )
        return answer

    async def delete_answer(self, actor_id: str | None, question_id: str, answer_id: str) -> Question:
        question = await asyncio.to_thread(self.questions.get, question_id)
        answer = question.answer(answer_id)
        if answer is None:
            raise NotFound("answer not found")
        await self.policy.require(actor_id, actions.ANSWER_DELETE, (question, answer))
        await asyncio.to_thread(self.questions.delete_answer, question_id, answer_id)
        return await asyncio.to_thread(self.questions.get, question_id)

    async def toggle_question_upvote(self, actor_id: str | None, question_id: str) -> bool:
        user_id = _require_actor(actor_id)
        return await asyncio.to_thread(self.questions.toggle_question_upvote, question_id, user_id)

    async def toggle_answer_upvote(self, actor_id: str | None, question_id: str, answer_id: str) -> bool:
        user_id = _require_actor(actor_id)
        return await asyncio.to_thread(self.questions.toggle_answer_upvote, question_id, answer_id, user_id)

    # messaging

    async def send_message(self, actor_id: str | None, receiver_id: str, text: str) -> tuple[Message, bool]:
        """Store a direct message, then push it live if the receiver is online."""

        sender_id = _require_actor(actor_id)
        if not isinstance(receiver_id, str) or not receiver_id:
            raise InvalidRequest("receiver required")
        if not isinstance(text, str) or not text.strip():
            raise InvalidRequest("message text required")
        message = await asyncio.to_thread(self.messages.append, sender_id, receiver_id, text)
        delivered = self.dispatcher.deliver_message(message)
        return message, delivered

    async def send_notification(
        self, actor_id: str | None, receiver_id: str, type: str, message: str = ""
    ) -> Notification:
        sender_id = _require_actor(actor_id)
        if not isinstance(receiver_id, str) or not receiver_id or not isinstance(type, str) or not type:
            raise InvalidRequest("receiver and type required")
        if not isinstance(message, str):
            raise InvalidRequest("message must be a string")
        name = await self.display_name(sender_id)
        return await self.dispatcher.notify(receiver_id, sender_name=name, type=type, message=message)

    async def display_name(self, user_id: str) -> str:
        profiles = await asyncio.to_thread(self.profiles.lookup, [user_id])
        profile = profiles.get(user_id)
        return profile.username if profile else user_id
