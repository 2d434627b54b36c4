from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


class Visibility(str, Enum):
    PRIVATE = "Private"
    CIRCLES = "Circles"
    PUBLIC = "Public"

    @classmethod
    def parse(cls, raw: Any) -> "Visibility":
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"visibility must be one of {[v.value for v in cls]}") from None


ALL_VISIBILITIES = frozenset(Visibility)
PUBLIC_ONLY = frozenset({Visibility.PUBLIC})
PUBLIC_AND_CIRCLES = frozenset({Visibility.PUBLIC, Visibility.CIRCLES})

ENTRY_KINDS = ("mood", "journal")

NOTIFY_POST = "post"
NOTIFY_LIKE = "like"
NOTIFY_COMMENT = "comment"
NOTIFY_QUESTION = "question"
NOTIFY_ANSWER = "answer"


@dataclass
class Profile:
    user_id: str
    username: str
    email: str
    bio: str
    avatar: str
    created_at_ms: int
    mantra: str = ""
    interests: List[str] = field(default_factory=list)
    ghost_mode: bool = False

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "username": self.username,
            "email": self.email,
            "bio": self.bio,
            "avatar": self.avatar,
            "mantra": self.mantra,
            "interests": list(self.interests),
            "ghostMode": self.ghost_mode,
            "createdAt": self.created_at_ms,
        }

    def to_summary(self) -> dict[str, Any]:
        return {"id": self.user_id, "username": self.username, "avatar": self.avatar}


@dataclass
class Entry:
    """A mood or journal record owned by one user."""

    entry_id: str
    kind: str
    owner_id: str
    visibility: Visibility
    content: str
    attributes: Dict[str, Any]
    created_at_ms: int
    updated_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        body = {
            "id": self.entry_id,
            "kind": self.kind,
            "ownerId": self.owner_id,
            "visibility": self.visibility.value,
            "content": self.content,
            "createdAt": self.created_at_ms,
            "updatedAt": self.updated_at_ms,
        }
        body.update(self.attributes)
        return body


@dataclass
class Circle:
    circle_id: str
    name: str
    description: str
    creator_id: str
    visibility: str
    allows_anonymous: bool
    cover_image: str
    tags: List[str]
    created_at_ms: int
    members: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)
    pending_members: List[str] = field(default_factory=list)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.circle_id,
            "name": self.name,
            "description": self.description,
            "creator": self.creator_id,
            "visibility": self.visibility,
            "allowsAnonymous": self.allows_anonymous,
            "coverImage": self.cover_image,
            "tags": list(self.tags),
            "members": list(self.members),
            "admins": list(self.admins),
            "pendingMembers": list(self.pending_members),
            "createdAt": self.created_at_ms,
        }


@dataclass(frozen=True)
class Message:
    msg_id: str
    sender_id: str
    receiver_id: str
    text: str
    read: bool
    created_at_ms: int

    def other_party(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.msg_id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "text": self.text,
            "read": self.read,
            "createdAt": self.created_at_ms,
        }


@dataclass(frozen=True)
class ConversationSummary:
    partner: Profile | None
    partner_id: str
    last_message: Message
    unread_count: int

    @property
    def last_message_at(self) -> int:
        return self.last_message.created_at_ms

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.partner_id,
            "username": self.partner.username if self.partner else None,
            "avatar": self.partner.avatar if self.partner else None,
            "lastMessage": self.last_message.text,
            "lastMessageAt": self.last_message_at,
            "lastMessageSenderId": self.last_message.sender_id,
            "unreadCount": self.unread_count,
        }


@dataclass(frozen=True)
class Notification:
    notification_id: str
    recipient_id: str
    sender_name: str
    type: str
    message: str
    read: bool
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.notification_id,
            "recipientId": self.recipient_id,
            "senderName": self.sender_name,
            "type": self.type,
            "message": self.message,
            "read": self.read,
            "createdAt": self.created_at_ms,
        }


@dataclass
class Comment:
    comment_id: str
    user_id: str
    text: str
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {"id": self.comment_id, "userId": self.user_id, "text": self.text, "createdAt": self.created_at_ms}


@dataclass
class Report:
    user_id: str
    reason: str
    created_at_ms: int


@dataclass
class Post:
    post_id: str
    circle_id: str
    author_id: str
    content: str
    is_anonymous: bool
    created_at_ms: int
    updated_at_ms: int
    likes: List[str] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    reports: List[Report] = field(default_factory=list)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.post_id,
            "circleId": self.circle_id,
            "userId": None if self.is_anonymous else self.author_id,
            "content": self.content,
            "isAnonymous": self.is_anonymous,
            "likes": list(self.likes),
            "comments": [c.to_api_dict() for c in self.comments],
            "reports": [
                {"userId": r.user_id, "reason": r.reason, "createdAt": r.created_at_ms} for r in self.reports
            ],
            "createdAt": self.created_at_ms,
            "updatedAt": self.updated_at_ms,
        }


@dataclass
class Answer:
    answer_id: str
    question_id: str
    author_id: str
    text: str
    created_at_ms: int
    upvotes: List[str] = field(default_factory=list)

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.answer_id,
            "userId": self.author_id,
            "text": self.text,
            "upvotes": list(self.upvotes),
            "createdAt": self.created_at_ms,
        }


@dataclass
class Question:
    question_id: str
    circle_id: str
    author_id: str
    title: str
    body: str
    created_at_ms: int
    updated_at_ms: int
    upvotes: List[str] = field(default_factory=list)
    answers: List[Answer] = field(default_factory=list)

    def answer(self, answer_id: str) -> Answer | None:
        for answer in self.answers:
            if answer.answer_id == answer_id:
                return answer
        return None

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.question_id,
            "circleId": self.circle_id,
            "userId": self.author_id,
            "title": self.title,
            "body": self.body,
            "upvotes": list(self.upvotes),
            "answers": [a.to_api_dict() for a in self.answers],
            "createdAt": self.created_at_ms,
            "updatedAt": self.updated_at_ms,
        }
