from __future__ import annotations

import sqlite3
from typing import Callable, Dict, List

from .errors import NotFound
from .models import Comment, Post, Report, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_COLUMNS = "post_id, circle_id, author_id, content, is_anonymous, created_at_ms, updated_at_ms"


class SQLitePostStore:
    """Circle posts with likes, comments and moderation reports."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(self, circle_id: str, author_id: str, content: str, *, is_anonymous: bool = False) -> Post:
        if not content.strip():
            raise ValueError("post content required")
        now_ms = self._now()
        post = Post(
            post_id=new_id("pst"),
            circle_id=circle_id,
            author_id=author_id,
            content=content,
            is_anonymous=bool(is_anonymous),
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        with self._backend.guarded() as conn:
            conn.execute(
                f"INSERT INTO posts ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (post.post_id, circle_id, author_id, content, int(post.is_anonymous), now_ms, now_ms),
            )
        return post

    def get(self, post_id: str) -> Post:
        posts = self._load("post_id=?", (post_id,))
        if not posts:
            raise NotFound("post not found")
        return posts[0]

    def list_for_circle(self, circle_id: str) -> List[Post]:
        return self._load("circle_id=?", (circle_id,))

    def update(self, post_id: str, content: str) -> Post:
        with self._backend.guarded() as conn:
            updated = conn.execute(
                "UPDATE posts SET content=?, updated_at_ms=? WHERE post_id=?",
                (content, self._now(), post_id),
            ).rowcount
        if not updated:
            raise NotFound("post not found")
        return self.get(post_id)

    def delete(self, post_id: str) -> None:
        with self._backend.guarded() as conn:
            deleted = conn.execute("DELETE FROM posts WHERE post_id=?", (post_id,)).rowcount
        if not deleted:
            raise NotFound("post not found")

    def toggle_like(self, post_id: str, user_id: str) -> bool:
        self.get(post_id)
        return self._backend.toggle_membership("post_likes", (post_id, user_id))

    def add_comment(self, post_id: str, user_id: str, text: str) -> Comment:
        if not text.strip():
            raise ValueError("comment text required")
        self.get(post_id)
        comment = Comment(comment_id=new_id("cmt"), user_id=user_id, text=text, created_at_ms=self._now())
        with self._backend.guarded() as conn:
            conn.execute(
                "INSERT INTO post_comments (comment_id, post_id, user_id, text, created_at_ms) VALUES (?, ?, ?, ?, ?)",
                (comment.comment_id, post_id, user_id, text, comment.created_at_ms),
            )
        return comment

    def report(self, post_id: str, user_id: str, reason: str) -> None:
        self.get(post_id)
        with self._backend.guarded() as conn:
            conn.execute(
                "INSERT INTO post_reports (post_id, user_id, reason, created_at_ms) VALUES (?, ?, ?, ?)",
                (post_id, user_id, reason, self._now()),
            )

    def dismiss_reports(self, post_id: str) -> None:
        self.get(post_id)
        with self._backend.guarded() as conn:
            conn.execute("DELETE FROM post_reports WHERE post_id=?", (post_id,))

    def _load(self, where: str, params: tuple) -> List[Post]:
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM posts WHERE {where} ORDER BY created_at_ms DESC, post_id DESC",
                params,
            ).fetchall()
            posts: Dict[str, Post] = {row[0]: self._build(row) for row in rows}
            if not posts:
                return []
            ids = list(posts)
            placeholders = ", ".join("?" for _ in ids)
            for row in conn.execute(
                f"SELECT post_id, user_id FROM post_likes WHERE post_id IN ({placeholders}) ORDER BY rowid", ids
            ):
                posts[row[0]].likes.append(row[1])
            for row in conn.execute(
                f"""
                SELECT post_id, comment_id, user_id, text, created_at_ms FROM post_comments
                WHERE post_id IN ({placeholders}) ORDER BY created_at_ms, comment_id
                """,
                ids,
            ):
                posts[row[0]].comments.append(
                    Comment(comment_id=row[1], user_id=row[2], text=row[3], created_at_ms=row[4])
                )
            for row in conn.execute(
                f"""
                SELECT post_id, user_id, reason, created_at_ms FROM post_reports
                WHERE post_id IN ({placeholders}) ORDER BY created_at_ms
                """,
                ids,
            ):
                posts[row[0]].reports.append(Report(user_id=row[1], reason=row[2], created_at_ms=row[3]))
        return list(posts.values())

    @staticmethod
    def _build(row: sqlite3.Row) -> Post:
        return Post(
            post_id=row[0],
            circle_id=row[1],
            author_id=row[2],
            content=row[3],
            is_anonymous=bool(row[4]),
            created_at_ms=row[5],
            updated_at_ms=row[6],
        )
