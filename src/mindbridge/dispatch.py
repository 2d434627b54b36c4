from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from .models import Message, Notification
from .notifications import SQLiteNotificationStore
from .presence import PresenceRegistry


logger = logging.getLogger(__name__)


def notification_frame(notification: Notification) -> dict:
    return {"v": 1, "t": "notification.new", "body": notification.to_api_dict()}


def message_frame(message: Message) -> dict:
    return {"v": 1, "t": "message.new", "body": message.to_api_dict()}


@dataclass
class DispatchReport:
    """Per-recipient outcome of one group dispatch."""

    persisted: List[str] = field(default_factory=list)
    pushed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class Dispatcher:
    """Delivers notifications and direct messages to online users.

    Notifications are written to the store first and then pushed to the
    recipient's live connection if presence finds one at that instant.
    Pushes are fire-and-forget onto an already open channel: there is no
    retry and no queue for offline users beyond the persisted row.
    """

    def __init__(self, presence: PresenceRegistry, notifications: SQLiteNotificationStore) -> None:
        self._presence = presence
        self._notifications = notifications

    async def broadcast(
        self,
        member_ids: Iterable[str],
        *,
        exclude_user_id: str | None,
        sender_name: str,
        type: str,
        message: str,
    ) -> DispatchReport:
        """Notify every member except the sender; one failing write does not stop the rest."""

        report = DispatchReport()
        recipients = [m for m in dict.fromkeys(member_ids) if m != exclude_user_id]
        for recipient_id in recipients:
            try:
                notification = await asyncio.to_thread(
                    self._notifications.create, recipient_id, sender_name, type, message
                )
            except Exception:
                logger.exception("dispatch: failed to persist %s notification for %s", type, recipient_id)
                report.failed.append(recipient_id)
                continue
            report.persisted.append(recipient_id)
            if self._push(recipient_id, notification_frame(notification)):
                report.pushed.append(recipient_id)
        return report

    async def notify(self, recipient_id: str, *, sender_name: str, type: str, message: str) -> Notification:
        """Persist one notification and push it if the recipient is online."""

        try:
            notification = await asyncio.to_thread(
                self._notifications.create, recipient_id, sender_name, type, message
            )
        except Exception:
            logger.exception("dispatch: failed to persist %s notification for %s", type, recipient_id)
            raise
        self._push(recipient_id, notification_frame(notification))
        return notification

    async def try_notify(
        self, recipient_id: str, *, sender_name: str, type: str, message: str
    ) -> Notification | None:
        """Like :meth:`notify` for side effects of another change: a failed write is logged, not raised."""

        try:
            notification = await asyncio.to_thread(
                self._notifications.create, recipient_id, sender_name, type, message
            )
        except Exception:
            logger.exception("dispatch: failed to persist %s notification for %s", type, recipient_id)
            return None
        self._push(recipient_id, notification_frame(notification))
        return notification

    def deliver_message(self, message: Message) -> bool:
        """Push a stored message to its receiver; offline receivers read it from history."""

        return self._push(message.receiver_id, message_frame(message))

    def _push(self, recipient_id: str, frame: dict) -> bool:
        connection = self._presence.lookup_by_user_id(recipient_id)
        if connection is None:
            logger.debug("dispatch: %s offline, %s not pushed", recipient_id, frame["t"])
            return False
        return connection.deliver(frame)
