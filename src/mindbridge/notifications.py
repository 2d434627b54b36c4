from __future__ import annotations

import sqlite3
from typing import Callable, List

from .errors import NotFound
from .models import Notification, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_COLUMNS = "notification_id, recipient_id, sender_name, type, message, read, created_at_ms"


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        notification_id=row[0],
        recipient_id=row[1],
        sender_name=row[2],
        type=row[3],
        message=row[4],
        read=bool(row[5]),
        created_at_ms=row[6],
    )


class SQLiteNotificationStore:
    """Durable notifications, retained until read; only the read flag changes."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(self, recipient_id: str, sender_name: str, type: str, message: str = "") -> Notification:
        notification = Notification(
            notification_id=new_id("ntf"),
            recipient_id=recipient_id,
            sender_name=sender_name,
            type=type,
            message=message,
            read=False,
            created_at_ms=self._now(),
        )
        with self._backend.guarded() as conn:
            conn.execute(
                f"INSERT INTO notifications ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, 0, ?)",
                (
                    notification.notification_id,
                    recipient_id,
                    sender_name,
                    type,
                    message,
                    notification.created_at_ms,
                ),
            )
        return notification

    def list_for(self, recipient_id: str) -> List[Notification]:
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM notifications WHERE recipient_id=?
                ORDER BY created_at_ms DESC, notification_id DESC
                """,
                (recipient_id,),
            ).fetchall()
        return [_row_to_notification(row) for row in rows]

    def unread_count(self, recipient_id: str) -> int:
        with self._backend.guarded() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE recipient_id=? AND read=0", (recipient_id,)
            ).fetchone()
        return row[0]

    def mark_read(self, notification_id: str) -> None:
        with self._backend.guarded() as conn:
            found = conn.execute(
                "SELECT 1 FROM notifications WHERE notification_id=?", (notification_id,)
            ).fetchone()
            if found is None:
                raise NotFound("notification not found")
            conn.execute("UPDATE notifications SET read=1 WHERE notification_id=?", (notification_id,))

    def mark_all_read(self, recipient_id: str) -> int:
        with self._backend.guarded() as conn:
            return conn.execute(
                "UPDATE notifications SET read=1 WHERE recipient_id=? AND read=0", (recipient_id,)
            ).rowcount
