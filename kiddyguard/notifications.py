"""Per-user in-app notifications (the bell menu)."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from kiddyguard.errors import NotFoundError, operation
from kiddyguard.models import Notification
from kiddyguard.schemas import NotificationOut
from kiddyguard.utils import validate_uuid

log = logging.getLogger(__name__)

NOTIFICATION_FETCH_LIMIT = 5


@operation
def get_notifications(session: Session, user_id: str) -> list[NotificationOut]:
    """The user's most recent notifications, newest first."""
    user_id = validate_uuid(user_id, "user ID")
    rows = session.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(NOTIFICATION_FETCH_LIMIT)
    ).scalars().all()
    return [NotificationOut.model_validate(n) for n in rows]


@operation
def mark_notification_read(session: Session, notification_id: str) -> NotificationOut:
    notification_id = validate_uuid(notification_id, "notification ID")
    notification = session.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError(f"Notification {notification_id} not found")
    notification.is_read = True
    session.commit()
    return NotificationOut.model_validate(notification)


@operation
def create_notification(
    session: Session, user_id: str, title: str, message: str, screening_id: str | None = None,
) -> NotificationOut:
    user_id = validate_uuid(user_id, "user ID")
    if screening_id is not None:
        screening_id = validate_uuid(screening_id, "screening ID")
    notification = Notification(user_id=user_id, title=title, message=message, screening_id=screening_id)
    session.add(notification)
    session.commit()
    log.debug("Notification %s created for user %s", notification.id, user_id)
    return NotificationOut.model_validate(notification)
