from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from .models import new_id


logger = logging.getLogger(__name__)

Callback = Callable[[dict], None]


@dataclass(eq=False)
class Connection:
    """Handle for one open real-time channel.

    Identity matters: two connections for the same user are different
    handles, and :meth:`PresenceRegistry.remove` only drops the exact one it
    is given.
    """

    callback: Callback
    connection_id: str = field(default_factory=lambda: new_id("conn"))
    closed: bool = False

    def deliver(self, frame: dict) -> bool:
        """Push a frame; a no-op once the channel has gone away."""

        if self.closed:
            return False
        self.callback(frame)
        return True

    def close(self) -> None:
        self.closed = True


@dataclass
class PresenceRecord:
    username: str
    user_id: str
    connection: Connection


class PresenceRegistry:
    """Process-local table of online users, at most one record per username.

    Mutations are expected on the event loop thread only, one connection
    event at a time, so no locking is done here.
    """

    def __init__(self) -> None:
        self._by_username: Dict[str, PresenceRecord] = {}
        self._by_user_id: Dict[str, PresenceRecord] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        self._started = True

    def clear(self) -> None:
        for record in self._by_username.values():
            record.connection.close()
        self._by_username.clear()
        self._by_user_id.clear()
        self._started = False

    def register(self, username: str, user_id: str, connection: Connection) -> PresenceRecord:
        """Make ``connection`` the live handle for ``username``; the newest login wins.

        A displaced handle is not closed, it simply stops being reachable.
        Any record held under the same username or the same user id is
        displaced, so both indexes always name the same records.
        """

        by_name = self._by_username.get(username)
        by_id = self._by_user_id.get(user_id)
        for previous in (by_name, by_id if by_id is not by_name else None):
            if previous is None:
                continue
            self._discard(previous)
            logger.info(
                "presence: %s displaced connection %s with %s",
                username,
                previous.connection.connection_id,
                connection.connection_id,
            )
        record = PresenceRecord(username=username, user_id=user_id, connection=connection)
        self._by_username[username] = record
        self._by_user_id[user_id] = record
        logger.debug("presence: registered %s (%s) on %s", username, user_id, connection.connection_id)
        return record

    def lookup_by_user_id(self, user_id: str) -> Connection | None:
        record = self._by_user_id.get(user_id)
        if record is None:
            return None
        return record.connection

    def lookup_by_username(self, username: str) -> Connection | None:
        record = self._by_username.get(username)
        if record is None:
            return None
        return record.connection

    def remove(self, connection: Connection) -> bool:
        """Drop the record holding exactly this connection, if any."""

        for record in list(self._by_username.values()):
            if record.connection is not connection:
                continue
            self._discard(record)
            logger.debug("presence: removed %s on %s", record.username, connection.connection_id)
            return True
        return False

    def _discard(self, record: PresenceRecord) -> None:
        if self._by_username.get(record.username) is record:
            del self._by_username[record.username]
        if self._by_user_id.get(record.user_id) is record:
            del self._by_user_id[record.user_id]

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user_id

    def online_user_ids(self) -> List[str]:
        return sorted(self._by_user_id)

    def __len__(self) -> int:
        return len(self._by_username)
