from __future__ import annotations

import json
import sqlite3
from typing import Any, Callable, Dict, Iterable, List

from .errors import NotFound
from .models import ENTRY_KINDS, Entry, Visibility, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_COLUMNS = "entry_id, kind, owner_id, visibility, content, attributes_json, created_at_ms, updated_at_ms"

_MOOD_ATTRIBUTES = ("score", "emotions", "color")
_JOURNAL_ATTRIBUTES = ("title", "moodTag")


def _check_kind(kind: str) -> None:
    if kind not in ENTRY_KINDS:
        raise ValueError(f"kind must be one of {list(ENTRY_KINDS)}")


def normalize_attributes(kind: str, attributes: Dict[str, Any] | None, *, fill_defaults: bool) -> Dict[str, Any]:
    """Keep only the attributes meaningful for ``kind``."""

    attributes = attributes or {}
    if kind == "mood":
        cleaned = {key: attributes[key] for key in _MOOD_ATTRIBUTES if key in attributes}
        if fill_defaults:
            cleaned.setdefault("emotions", [])
    else:
        cleaned = {key: attributes[key] for key in _JOURNAL_ATTRIBUTES if key in attributes}
        if fill_defaults:
            cleaned.setdefault("title", "Untitled Entry")
            cleaned.setdefault("moodTag", "Neutral")
    return cleaned


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        entry_id=row[0],
        kind=row[1],
        owner_id=row[2],
        visibility=Visibility(row[3]),
        content=row[4],
        attributes=json.loads(row[5]),
        created_at_ms=row[6],
        updated_at_ms=row[7],
    )


class SQLiteEntryStore:
    """Mood and journal records. Authorization is the caller's concern."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(
        self,
        kind: str,
        owner_id: str,
        content: str,
        *,
        visibility: Visibility = Visibility.PRIVATE,
        attributes: Dict[str, Any] | None = None,
    ) -> Entry:
        _check_kind(kind)
        now_ms = self._now()
        entry = Entry(
            entry_id=new_id(kind),
            kind=kind,
            owner_id=owner_id,
            visibility=visibility,
            content=content,
            attributes=normalize_attributes(kind, attributes, fill_defaults=True),
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        with self._backend.guarded() as conn:
            conn.execute(
                f"INSERT INTO entries ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.kind,
                    entry.owner_id,
                    entry.visibility.value,
                    entry.content,
                    json.dumps(entry.attributes, sort_keys=True),
                    entry.created_at_ms,
                    entry.updated_at_ms,
                ),
            )
        return entry

    def get(self, entry_id: str) -> Entry:
        with self._backend.guarded() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM entries WHERE entry_id=?", (entry_id,)).fetchone()
        if row is None:
            raise NotFound("entry not found")
        return _row_to_entry(row)

    def update(
        self,
        entry_id: str,
        *,
        content: str | None = None,
        visibility: Visibility | None = None,
        attributes: Dict[str, Any] | None = None,
    ) -> Entry:
        with self._backend.transaction() as cursor:
            row = cursor.execute(f"SELECT {_COLUMNS} FROM entries WHERE entry_id=?", (entry_id,)).fetchone()
            if row is None:
                raise NotFound("entry not found")
            entry = _row_to_entry(row)
            if content is not None:
                entry.content = content
            if visibility is not None:
                entry.visibility = visibility
            if attributes:
                entry.attributes.update(normalize_attributes(entry.kind, attributes, fill_defaults=False))
            entry.updated_at_ms = self._now()
            cursor.execute(
                """
                UPDATE entries SET content=?, visibility=?, attributes_json=?, updated_at_ms=?
                WHERE entry_id=?
                """,
                (
                    entry.content,
                    entry.visibility.value,
                    json.dumps(entry.attributes, sort_keys=True),
                    entry.updated_at_ms,
                    entry_id,
                ),
            )
        return entry

    def delete(self, entry_id: str) -> None:
        with self._backend.guarded() as conn:
            deleted = conn.execute("DELETE FROM entries WHERE entry_id=?", (entry_id,)).rowcount
        if not deleted:
            raise NotFound("entry not found")

    def list_for_owner(self, owner_id: str, kind: str, visibilities: Iterable[Visibility]) -> List[Entry]:
        """Return the owner's entries of ``kind`` whose tag is allowed, newest first."""

        _check_kind(kind)
        tags = sorted(v.value for v in visibilities)
        if not tags:
            return []
        placeholders = ", ".join("?" for _ in tags)
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM entries
                WHERE owner_id=? AND kind=? AND visibility IN ({placeholders})
                ORDER BY created_at_ms DESC, entry_id DESC
                """,
                [owner_id, kind, *tags],
            ).fetchall()
        return [_row_to_entry(row) for row in rows]
