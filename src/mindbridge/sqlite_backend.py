from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from .errors import TransientStoreError


MEMORY_DB = ":memory:"

# Tables that toggle_membership may touch; keys are the tables' full primary keys.
_TOGGLE_TABLES = {
    "post_likes": ("post_id", "user_id"),
    "question_upvotes": ("question_id", "user_id"),
    "answer_upvotes": ("answer_id", "user_id"),
}


class SQLiteBackend:
    """Owns a shared SQLite connection and applies mindbridge migrations."""

    def __init__(self, db_path: str | None = None) -> None:
        self._lock = threading.Lock()
        db_path = db_path or MEMORY_DB
        if db_path != MEMORY_DB:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure(in_memory=db_path == MEMORY_DB)
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def guarded(self) -> Iterator[sqlite3.Connection]:
        """Serialize access to the connection for single-statement work."""

        with self._lock:
            try:
                yield self._conn
            except sqlite3.OperationalError as exc:
                raise TransientStoreError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                raise TransientStoreError(str(exc)) from exc
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    def toggle_membership(self, table: str, key: Sequence[str]) -> bool:
        """Insert the key row if absent, delete it if present; return whether it is now present."""

        columns = _TOGGLE_TABLES.get(table)
        if columns is None or len(columns) != len(key):
            raise ValueError(f"unsupported toggle table: {table}")
        where = " AND ".join(f"{column}=?" for column in columns)
        with self.transaction() as cursor:
            deleted = cursor.execute(f"DELETE FROM {table} WHERE {where}", tuple(key)).rowcount
            if deleted:
                return False
            placeholders = ", ".join("?" for _ in columns)
            cursor.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(key),
            )
            return True

    def _configure(self, *, in_memory: bool) -> None:
        cursor = self._conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute("PRAGMA user_version = 1")
        elif user_version != 1:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL,
                bio TEXT NOT NULL DEFAULT '',
                avatar TEXT NOT NULL DEFAULT '',
                created_at_ms INTEGER NOT NULL,
                mantra TEXT NOT NULL DEFAULT '',
                interests_json TEXT NOT NULL DEFAULT '[]',
                ghost_mode INTEGER NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS entries (
                entry_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                visibility TEXT NOT NULL,
                content TEXT NOT NULL,
                attributes_json TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS entries_owner ON entries (owner_id, kind, created_at_ms)",
            """
            CREATE TABLE IF NOT EXISTS circles (
                circle_id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT NOT NULL,
                creator_id TEXT NOT NULL,
                visibility TEXT NOT NULL,
                allows_anonymous INTEGER NOT NULL,
                cover_image TEXT NOT NULL,
                tags_json TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS circle_members (
                circle_id TEXT NOT NULL REFERENCES circles (circle_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                joined_at_ms INTEGER NOT NULL,
                PRIMARY KEY (circle_id, user_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS circle_members_user ON circle_members (user_id, role)",
            """
            CREATE TABLE IF NOT EXISTS messages (
                msg_id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                pair_lo TEXT NOT NULL,
                pair_hi TEXT NOT NULL,
                text TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS messages_pair ON messages (pair_lo, pair_hi, created_at_ms)",
            "CREATE INDEX IF NOT EXISTS messages_pair_hi ON messages (pair_hi, created_at_ms)",
            "CREATE INDEX IF NOT EXISTS messages_unread ON messages (receiver_id, read, sender_id)",
            """
            CREATE TABLE IF NOT EXISTS notifications (
                notification_id TEXT PRIMARY KEY,
                recipient_id TEXT NOT NULL,
                sender_name TEXT NOT NULL,
                type TEXT NOT NULL,
                message TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS notifications_recipient ON notifications (recipient_id, created_at_ms)",
            """
            CREATE TABLE IF NOT EXISTS posts (
                post_id TEXT PRIMARY KEY,
                circle_id TEXT NOT NULL REFERENCES circles (circle_id) ON DELETE CASCADE,
                author_id TEXT NOT NULL,
                content TEXT NOT NULL,
                is_anonymous INTEGER NOT NULL,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS posts_circle ON posts (circle_id, created_at_ms)",
            """
            CREATE TABLE IF NOT EXISTS post_likes (
                post_id TEXT NOT NULL REFERENCES posts (post_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (post_id, user_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS post_comments (
                comment_id TEXT PRIMARY KEY,
                post_id TEXT NOT NULL REFERENCES posts (post_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS post_reports (
                post_id TEXT NOT NULL REFERENCES posts (post_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS questions (
                question_id TEXT PRIMARY KEY,
                circle_id TEXT NOT NULL REFERENCES circles (circle_id) ON DELETE CASCADE,
                author_id TEXT NOT NULL,
                title TEXT NOT NULL,
                body TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS questions_circle ON questions (circle_id, created_at_ms)",
            """
            CREATE TABLE IF NOT EXISTS question_upvotes (
                question_id TEXT NOT NULL REFERENCES questions (question_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (question_id, user_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS answers (
                answer_id TEXT PRIMARY KEY,
                question_id TEXT NOT NULL REFERENCES questions (question_id) ON DELETE CASCADE,
                author_id TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS answer_upvotes (
                answer_id TEXT NOT NULL REFERENCES answers (answer_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (answer_id, user_id)
            )
            """,
        ]
        for statement in statements:
            self._conn.execute(statement)
