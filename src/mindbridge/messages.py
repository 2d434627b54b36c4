from __future__ import annotations

import sqlite3
from typing import Callable, Dict, List

from .models import Message, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_COLUMNS = "msg_id, sender_id, receiver_id, text, read, created_at_ms"


def pair_key(first_id: str, second_id: str) -> tuple[str, str]:
    """Order-independent key for the conversation between two users."""

    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        msg_id=row[0],
        sender_id=row[1],
        receiver_id=row[2],
        text=row[3],
        read=bool(row[4]),
        created_at_ms=row[5],
    )


class SQLiteMessageStore:
    """Append-only direct message log; only the read flag is ever updated."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def append(self, sender_id: str, receiver_id: str, text: str, *, created_at_ms: int | None = None) -> Message:
        message = Message(
            msg_id=new_id("msg"),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            read=False,
            created_at_ms=self._now() if created_at_ms is None else created_at_ms,
        )
        lo, hi = pair_key(sender_id, receiver_id)
        with self._backend.guarded() as conn:
            conn.execute(
                """
                INSERT INTO messages (msg_id, sender_id, receiver_id, pair_lo, pair_hi, text, read, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (message.msg_id, sender_id, receiver_id, lo, hi, text, message.created_at_ms),
            )
        return message

    def history(self, first_id: str, second_id: str) -> List[Message]:
        """All messages between two users, oldest first."""

        lo, hi = pair_key(first_id, second_id)
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE pair_lo=? AND pair_hi=?
                ORDER BY created_at_ms ASC, msg_id ASC
                """,
                (lo, hi),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def latest_per_partner(self, user_id: str) -> List[Message]:
        """The most recent message of every conversation ``user_id`` takes part in.

        One row per distinct pair, newest conversation first. Ties on the
        creation time are broken by message id so the result does not depend
        on insertion order.
        """

        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM (
                    SELECT {_COLUMNS},
                        ROW_NUMBER() OVER (
                            PARTITION BY pair_lo, pair_hi
                            ORDER BY created_at_ms DESC, msg_id DESC
                        ) AS rank_in_pair
                    FROM messages
                    WHERE pair_lo=? OR pair_hi=?
                )
                WHERE rank_in_pair = 1
                ORDER BY created_at_ms DESC, msg_id DESC
                """,
                (user_id, user_id),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def unread_counts(self, user_id: str) -> Dict[str, int]:
        """Unread messages addressed to ``user_id``, keyed by sender."""

        with self._backend.guarded() as conn:
            rows = conn.execute(
                "SELECT sender_id, COUNT(*) FROM messages WHERE receiver_id=? AND read=0 GROUP BY sender_id",
                (user_id,),
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    def mark_conversation_read(self, user_id: str, partner_id: str) -> int:
        """Flip ``read`` on every unread message from ``partner_id`` to ``user_id``."""

        with self._backend.guarded() as conn:
            return conn.execute(
                "UPDATE messages SET read=1 WHERE sender_id=? AND receiver_id=? AND read=0",
                (partner_id, user_id),
            ).rowcount
