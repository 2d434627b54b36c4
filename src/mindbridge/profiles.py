from __future__ import annotations

import json
import sqlite3
from typing import Any, Callable, Dict, Iterable

from .errors import Conflict, NotFound
from .models import Profile, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_INSERT_COLUMNS = "user_id, username, email, bio, avatar, created_at_ms"
_COLUMNS = f"{_INSERT_COLUMNS}, mantra, interests_json, ghost_mode"

_UPDATABLE = {
    "username": "username",
    "email": "email",
    "bio": "bio",
    "avatar": "avatar",
    "mantra": "mantra",
    "interests": "interests_json",
    "ghostMode": "ghost_mode",
}


def _row_to_profile(row: sqlite3.Row) -> Profile:
    return Profile(
        user_id=row[0],
        username=row[1],
        email=row[2],
        bio=row[3],
        avatar=row[4],
        created_at_ms=row[5],
        mantra=row[6],
        interests=json.loads(row[7]),
        ghost_mode=bool(row[8]),
    )


class SQLiteProfileStore:
    """Minimal user records used to enrich conversations and notifications."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(self, username: str, email: str = "", *, bio: str = "", avatar: str | None = None) -> Profile:
        username = username.strip()
        if not username:
            raise ValueError("username required")
        if not isinstance(email, str) or not isinstance(bio, str):
            raise ValueError("email and bio must be strings")
        if avatar is not None and not isinstance(avatar, str):
            raise ValueError("avatar must be a string")
        profile = Profile(
            user_id=new_id("usr"),
            username=username,
            email=email,
            bio=bio,
            # The client renders avatars from a seed; the username is the default seed.
            avatar=avatar or username,
            created_at_ms=self._now(),
        )
        try:
            with self._backend.guarded() as conn:
                conn.execute(
                    f"INSERT INTO users ({_INSERT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        profile.user_id,
                        profile.username,
                        profile.email,
                        profile.bio,
                        profile.avatar,
                        profile.created_at_ms,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"username {username!r} is taken") from exc
        return profile

    def get(self, user_id: str) -> Profile:
        with self._backend.guarded() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM users WHERE user_id=?", (user_id,)).fetchone()
        if row is None:
            raise NotFound("user not found")
        return _row_to_profile(row)

    def update(self, user_id: str, updates: Dict[str, Any]) -> Profile:
        """Apply the known profile fields in ``updates``; other keys are ignored."""

        self.get(user_id)
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            column = _UPDATABLE.get(key)
            if column is None:
                continue
            if key == "interests":
                if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                    raise ValueError("interests must be a list of strings")
                value = json.dumps(value)
            elif key == "ghostMode":
                if not isinstance(value, bool):
                    raise ValueError("ghostMode must be a boolean")
                value = int(value)
            elif not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            elif key == "username":
                value = value.strip()
                if not value:
                    raise ValueError("username required")
            assignments.append(f"{column}=?")
            params.append(value)
        if assignments:
            try:
                with self._backend.guarded() as conn:
                    conn.execute(
                        f"UPDATE users SET {', '.join(assignments)} WHERE user_id=?", [*params, user_id]
                    )
            except sqlite3.IntegrityError as exc:
                if "users.username" not in str(exc):
                    raise
                raise Conflict(f"username {updates['username']!r} is taken") from exc
        return self.get(user_id)

    def delete(self, user_id: str) -> None:
        """Remove the account together with its mood and journal entries."""

        with self._backend.transaction() as cursor:
            deleted = cursor.execute("DELETE FROM users WHERE user_id=?", (user_id,)).rowcount
            if not deleted:
                raise NotFound("user not found")
            cursor.execute("DELETE FROM entries WHERE owner_id=?", (user_id,))

    def lookup(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        """Return profiles for the known ids; unknown ids are omitted."""

        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM users WHERE user_id IN ({placeholders})", ids
            ).fetchall()
        return {row[0]: _row_to_profile(row) for row in rows}

    def stats(self, user_id: str) -> dict[str, int]:
        self.get(user_id)
        with self._backend.guarded() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) FROM entries WHERE owner_id=? GROUP BY kind", (user_id,)
            ).fetchall()
        counts = {row[0]: row[1] for row in rows}
        return {"moodCount": counts.get("mood", 0), "journalCount": counts.get("journal", 0)}
