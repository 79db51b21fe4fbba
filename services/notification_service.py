"""
Notification Service - after-commit delivery
Notifications raised inside a unit of work are queued on the Session and
only handed to the notifier once that Session commits. A rollback discards
them, and a delivery failure is logged without touching the committed
financial state.
"""

import logging
from dataclasses import dataclass, asdict
from typing import List, Optional

import requests
from sqlalchemy import event, select
from sqlalchemy.orm import Session

from config import Config
from models import NotificationType, User, UserRole

logger = logging.getLogger(__name__)

PENDING_NOTIFICATIONS_KEY = "pending_notifications"


@dataclass
class Notification:
    user_id: str
    content: str
    link: Optional[str]
    type: str


class Notifier:
    """Outbound notification collaborator"""

    def notify(self, user_id: str, content: str, link: Optional[str], notification_type: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier: writes the notification to the log"""

    def notify(self, user_id: str, content: str, link: Optional[str], notification_type: str) -> None:
        logger.info(f"🔔 NOTIFY [{notification_type}] user={user_id}: {content} ({link or '-'})")


class HttpNotifier(Notifier):
    """Posts notifications to the external notification service"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, user_id: str, content: str, link: Optional[str], notification_type: str) -> None:
        response = requests.post(
            self.url,
            json={"userId": user_id, "content": content, "link": link, "type": notification_type},
            timeout=self.timeout,
        )
        response.raise_for_status()


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        if Config.NOTIFICATION_WEBHOOK_URL:
            _notifier = HttpNotifier(Config.NOTIFICATION_WEBHOOK_URL, Config.NOTIFICATION_TIMEOUT_SECONDS)
        else:
            _notifier = LoggingNotifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> None:
    """Install a notifier (None restores the configured default on next use)"""
    global _notifier
    _notifier = notifier


def queue_notification(
    session: Session,
    user_id: str,
    content: str,
    link: Optional[str] = None,
    notification_type: NotificationType = NotificationType.ORDER,
) -> None:
    """Queue a notification to be sent after ``session`` commits"""
    pending: List[Notification] = session.info.setdefault(PENDING_NOTIFICATIONS_KEY, [])
    pending.append(Notification(user_id=user_id, content=content, link=link, type=notification_type.value))


def queue_admin_notification(
    session: Session,
    content: str,
    link: Optional[str] = None,
    notification_type: NotificationType = NotificationType.DISPUTE,
) -> int:
    """Queue the same notification for every admin account; returns how many were queued"""
    admin_ids = session.execute(
        select(User.id).where(User.role == UserRole.ADMIN.value)
    ).scalars().all()
    for admin_id in admin_ids:
        queue_notification(session, admin_id, content, link, notification_type)
    return len(admin_ids)


def pending_notifications(session: Session) -> List[Notification]:
    return list(session.info.get(PENDING_NOTIFICATIONS_KEY, []))


def discard_pending_notifications(session: Session) -> int:
    """Drop everything queued on ``session``; returns how many were dropped"""
    discarded = session.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    if discarded:
        logger.debug(f"Discarded {len(discarded)} notifications after rollback")
    return len(discarded)


def dispatch_notification(notification: Notification) -> bool:
    try:
        get_notifier().notify(notification.user_id, notification.content, notification.link, notification.type)
        return True
    except Exception as e:
        # Delivery is best-effort; the transaction that raised it is already committed
        logger.error(f"❌ NOTIFY_FAILED: {asdict(notification)} - {e}")
        return False


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    pending = session.info.pop(PENDING_NOTIFICATIONS_KEY, [])
    for notification in pending:
        dispatch_notification(notification)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    discard_pending_notifications(session)
