from __future__ import annotations

import json
import sqlite3
from typing import Any, Callable, Dict, Iterable, List

from .errors import Conflict, NotFound, Unauthorized
from .models import Circle, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
ROLE_PENDING = "pending"

CIRCLE_PUBLIC = "public"
CIRCLE_PRIVATE = "private"

JOINED = "joined"
REQUESTED = "requested"

_COLUMNS = "circle_id, name, description, creator_id, visibility, allows_anonymous, cover_image, tags_json, created_at_ms"
_UPDATABLE = {
    "name": "name",
    "description": "description",
    "visibility": "visibility",
    "allowsAnonymous": "allows_anonymous",
    "coverImage": "cover_image",
    "tags": "tags_json",
}


def _check_circle_visibility(visibility: str) -> None:
    if visibility not in (CIRCLE_PUBLIC, CIRCLE_PRIVATE):
        raise ValueError("circle visibility must be 'public' or 'private'")


class SQLiteCircleStore:
    """Circles and their membership roster.

    Membership rows are keyed by ``(circle_id, user_id)`` so a user holds at
    most one role per circle: ``pending``, ``member`` or ``admin`` (admins are
    members). Admin-gated mutations take the acting user and raise
    :class:`Unauthorized` when the actor is not an admin of the circle.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(
        self,
        name: str,
        description: str,
        creator_id: str,
        *,
        tags: Iterable[str] = (),
        visibility: str = CIRCLE_PUBLIC,
        allows_anonymous: bool = False,
        cover_image: str = "",
    ) -> Circle:
        name = name.strip()
        if len(name) < 3:
            raise ValueError("circle name must be at least 3 characters")
        _check_circle_visibility(visibility)
        if not isinstance(description, str) or not isinstance(cover_image, str):
            raise ValueError("description and coverImage must be strings")
        now_ms = self._now()
        circle = Circle(
            circle_id=new_id("cir"),
            name=name,
            description=description,
            creator_id=creator_id,
            visibility=visibility,
            allows_anonymous=bool(allows_anonymous),
            cover_image=cover_image,
            tags=list(tags),
            created_at_ms=now_ms,
            members=[creator_id],
            admins=[creator_id],
        )
        try:
            with self._backend.transaction() as cursor:
                cursor.execute(
                    f"INSERT INTO circles ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        circle.circle_id,
                        circle.name,
                        circle.description,
                        circle.creator_id,
                        circle.visibility,
                        int(circle.allows_anonymous),
                        circle.cover_image,
                        json.dumps(circle.tags),
                        circle.created_at_ms,
                    ),
                )
                cursor.execute(
                    "INSERT INTO circle_members (circle_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?)",
                    (circle.circle_id, creator_id, ROLE_ADMIN, now_ms),
                )
        except sqlite3.IntegrityError as exc:
            if "circles.name" not in str(exc):
                raise
            raise Conflict(f"circle name {name!r} is taken") from exc
        return circle

    def get(self, circle_id: str) -> Circle:
        with self._backend.guarded() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM circles WHERE circle_id=?", (circle_id,)).fetchone()
            if row is None:
                raise NotFound("circle not found")
            roster = conn.execute(
                "SELECT user_id, role FROM circle_members WHERE circle_id=? ORDER BY joined_at_ms, user_id",
                (circle_id,),
            ).fetchall()
        return self._build(row, roster)

    def list(self, *, search: str | None = None, tag: str | None = None) -> List[Circle]:
        query = f"SELECT {_COLUMNS} FROM circles"
        params: list[Any] = []
        if search:
            query += " WHERE instr(lower(name), lower(?)) > 0"
            params.append(search)
        query += " ORDER BY created_at_ms, circle_id"
        with self._backend.guarded() as conn:
            rows = conn.execute(query, params).fetchall()
            rosters: Dict[str, list] = {}
            for roster_row in conn.execute(
                "SELECT circle_id, user_id, role FROM circle_members ORDER BY joined_at_ms, user_id"
            ).fetchall():
                rosters.setdefault(roster_row[0], []).append((roster_row[1], roster_row[2]))
        circles = [self._build(row, rosters.get(row[0], [])) for row in rows]
        if tag:
            circles = [circle for circle in circles if tag in circle.tags]
        return circles

    def update(self, circle_id: str, actor_id: str, updates: Dict[str, Any]) -> Circle:
        self._require_admin(circle_id, actor_id)
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in updates.items():
            column = _UPDATABLE.get(key)
            if column is None:
                continue
            if key == "allowsAnonymous":
                if not isinstance(value, bool):
                    raise ValueError("allowsAnonymous must be a boolean")
                value = int(value)
            elif key == "tags":
                if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
                    raise ValueError("tags must be a list of strings")
                value = json.dumps(value)
            elif not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            elif key == "name":
                value = value.strip()
                if len(value) < 3:
                    raise ValueError("circle name must be at least 3 characters")
            elif key == "visibility":
                _check_circle_visibility(value)
            assignments.append(f"{column}=?")
            params.append(value)
        if assignments:
            try:
                with self._backend.guarded() as conn:
                    conn.execute(
                        f"UPDATE circles SET {', '.join(assignments)} WHERE circle_id=?",
                        [*params, circle_id],
                    )
            except sqlite3.IntegrityError as exc:
                if "circles.name" not in str(exc):
                    raise
                raise Conflict("circle name is taken") from exc
        return self.get(circle_id)

    def join(self, circle_id: str, user_id: str) -> str:
        """Join a public circle or request to join a private one."""

        circle = self._require_circle(circle_id)
        with self._backend.transaction() as cursor:
            row = cursor.execute(
                "SELECT role FROM circle_members WHERE circle_id=? AND user_id=?", (circle_id, user_id)
            ).fetchone()
            if row is not None and row[0] in (ROLE_MEMBER, ROLE_ADMIN):
                raise Conflict("already a member")
            if row is not None:
                return REQUESTED
            role = ROLE_PENDING if circle.visibility == CIRCLE_PRIVATE else ROLE_MEMBER
            cursor.execute(
                "INSERT INTO circle_members (circle_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?)",
                (circle_id, user_id, role, self._now()),
            )
        return REQUESTED if role == ROLE_PENDING else JOINED

    def leave(self, circle_id: str, user_id: str) -> None:
        circle = self._require_circle(circle_id)
        if user_id == circle.creator_id:
            raise Unauthorized("the circle creator cannot leave")
        with self._backend.guarded() as conn:
            conn.execute("DELETE FROM circle_members WHERE circle_id=? AND user_id=?", (circle_id, user_id))

    def decide_request(self, circle_id: str, actor_id: str, user_id: str, approve: bool) -> None:
        self._require_admin(circle_id, actor_id)
        with self._backend.transaction() as cursor:
            row = cursor.execute(
                "SELECT role FROM circle_members WHERE circle_id=? AND user_id=?", (circle_id, user_id)
            ).fetchone()
            if row is None or row[0] != ROLE_PENDING:
                raise NotFound("no pending request for user")
            if approve:
                cursor.execute(
                    "UPDATE circle_members SET role=?, joined_at_ms=? WHERE circle_id=? AND user_id=?",
                    (ROLE_MEMBER, self._now(), circle_id, user_id),
                )
            else:
                cursor.execute(
                    "DELETE FROM circle_members WHERE circle_id=? AND user_id=?", (circle_id, user_id)
                )

    def kick(self, circle_id: str, actor_id: str, member_id: str) -> None:
        circle = self._require_admin(circle_id, actor_id)
        if member_id == circle.creator_id:
            raise Unauthorized("the circle creator cannot be removed")
        with self._backend.guarded() as conn:
            conn.execute(
                "DELETE FROM circle_members WHERE circle_id=? AND user_id=? AND role IN (?, ?)",
                (circle_id, member_id, ROLE_MEMBER, ROLE_ADMIN),
            )

    def promote(self, circle_id: str, actor_id: str, member_id: str) -> None:
        self._require_admin(circle_id, actor_id)
        with self._backend.guarded() as conn:
            updated = conn.execute(
                "UPDATE circle_members SET role=? WHERE circle_id=? AND user_id=? AND role IN (?, ?)",
                (ROLE_ADMIN, circle_id, member_id, ROLE_MEMBER, ROLE_ADMIN),
            ).rowcount
        if not updated:
            raise NotFound("user is not a member of this circle")

    def role(self, circle_id: str, user_id: str) -> str | None:
        with self._backend.guarded() as conn:
            row = conn.execute(
                "SELECT role FROM circle_members WHERE circle_id=? AND user_id=?",
                (circle_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return row[0]

    def is_member(self, circle_id: str, user_id: str) -> bool:
        return self.role(circle_id, user_id) in (ROLE_MEMBER, ROLE_ADMIN)

    def is_admin(self, circle_id: str, user_id: str) -> bool:
        return self.role(circle_id, user_id) == ROLE_ADMIN

    def both_members(self, circle_id: str, first_id: str, second_id: str) -> bool:
        """True iff both users are current members of this circle."""

        with self._backend.guarded() as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT user_id) FROM circle_members
                WHERE circle_id=? AND user_id IN (?, ?) AND role IN (?, ?)
                """,
                (circle_id, first_id, second_id, ROLE_MEMBER, ROLE_ADMIN),
            ).fetchone()
        expected = 1 if first_id == second_id else 2
        return row[0] == expected

    def share_any_circle(self, first_id: str, second_id: str) -> bool:
        """True iff some circle has both users as current members."""

        with self._backend.guarded() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM circle_members a
                JOIN circle_members b ON a.circle_id = b.circle_id
                WHERE a.user_id=? AND b.user_id=?
                  AND a.role IN (?, ?) AND b.role IN (?, ?)
                LIMIT 1
                """,
                (first_id, second_id, ROLE_MEMBER, ROLE_ADMIN, ROLE_MEMBER, ROLE_ADMIN),
            ).fetchone()
        return row is not None

    def member_ids(self, circle_id: str) -> List[str]:
        self._require_circle(circle_id)
        with self._backend.guarded() as conn:
            rows = conn.execute(
                "SELECT user_id FROM circle_members WHERE circle_id=? AND role IN (?, ?) ORDER BY joined_at_ms, user_id",
                (circle_id, ROLE_MEMBER, ROLE_ADMIN),
            ).fetchall()
        return [row[0] for row in rows]

    def _require_circle(self, circle_id: str) -> Circle:
        with self._backend.guarded() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM circles WHERE circle_id=?", (circle_id,)).fetchone()
        if row is None:
            raise NotFound("circle not found")
        return self._build(row, [])

    def _require_admin(self, circle_id: str, actor_id: str) -> Circle:
        circle = self._require_circle(circle_id)
        if not self.is_admin(circle_id, actor_id):
            raise Unauthorized("circle admin required")
        return circle

    @staticmethod
    def _build(row: sqlite3.Row, roster: Iterable) -> Circle:
        circle = Circle(
            circle_id=row[0],
            name=row[1],
            description=row[2],
            creator_id=row[3],
            visibility=row[4],
            allows_anonymous=bool(row[5]),
            cover_image=row[6],
            tags=json.loads(row[7]),
            created_at_ms=row[8],
        )
        for user_id, role in roster:
            if role == ROLE_PENDING:
                circle.pending_members.append(user_id)
                continue
            circle.members.append(user_id)
            if role == ROLE_ADMIN:
                circle.admins.append(user_id)
        return circle
