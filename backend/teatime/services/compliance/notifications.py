"""
Notification Emitter

Fire-and-forget user events keyed to lifecycle transitions.
The in-app record is added to the caller's session so it commits with the
transition that caused it. Push channels run afterwards and may fail
without affecting the transition.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import SUBMISSION_WINDOW_MINUTES
from ...models.db_models import NotificationDB, NotificationType

logger = logging.getLogger(__name__)

# Push delivery hook: receives the persisted notification
NotificationChannel = Callable[[NotificationDB], None]


# =============================================================================
# MESSAGE TEMPLATES
# =============================================================================

def reminder_message(tea_time: str) -> str:
    return f"Tea time is at {tea_time}. Get the kettle on!"


def window_open_message(window_minutes: int = SUBMISSION_WINDOW_MINUTES) -> str:
    return f"It's tea time! Don't forget to take your tea selfie within the next {window_minutes} minutes."


def verified_message() -> str:
    return "Your tea submission has been verified. Cheers!"


def rejected_message(reason: Optional[str]) -> str:
    return f"Your tea submission was rejected: {reason or 'No reason provided'}"


def fine_issued_message(amount: Decimal) -> str:
    return f"You've been fined £{amount:.2f} for missing tea time."


def fine_paid_message(amount: Decimal) -> str:
    return f"Your fine of £{amount:.2f} has been paid. Thank you."


def donation_accepted_message(amount: Decimal, charity_name: str) -> str:
    return f"Your donation of £{amount:.2f} to {charity_name} has been verified. Your fine is settled."


# =============================================================================
# EMITTER
# =============================================================================

class NotificationEmitter:
    """Creates in-app notifications and forwards them to push channels."""

    def __init__(self, db_session: Session, channels: Optional[List[NotificationChannel]] = None):
        self.db = db_session
        self.channels = list(channels or [])

    def emit(
        self,
        user_id: str,
        type: NotificationType,
        content: str,
        related_ref: Optional[str] = None,
    ) -> NotificationDB:
        notification = NotificationDB(
            id=str(uuid4()),
            user_id=user_id,
            type=type,
            content=content,
            related_ref=related_ref,
            is_read=False,
            created_at=datetime.utcnow(),
        )
        self.db.add(notification)
        logger.info(f"Notification {type.value} -> {user_id}")

        for channel in self.channels:
            try:
                channel(notification)
            except Exception as e:
                # Delivery is best-effort; the in-app record still stands
                logger.error(f"Notification channel failed for {notification.id}: {e}")

        return notification

    # =========================================================================
    # READ SIDE
    # =========================================================================

    def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[NotificationDB]:
        query = self.db.query(NotificationDB).filter(NotificationDB.user_id == user_id)
        if unread_only:
            query = query.filter(NotificationDB.is_read.is_(False))
        return query.order_by(NotificationDB.created_at.desc()).limit(limit).all()

    def unread_count(self, user_id: str) -> int:
        return self.db.query(NotificationDB).filter(
            NotificationDB.user_id == user_id,
            NotificationDB.is_read.is_(False),
        ).count()

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationDB]:
        notification = self.db.query(NotificationDB).filter(
            NotificationDB.id == notification_id,
            NotificationDB.user_id == user_id,
        ).first()
        if notification is not None:
            notification.is_read = True
        return notification

    def mark_all_read(self, user_id: str) -> int:
        return self.db.query(NotificationDB).filter(
            NotificationDB.user_id == user_id,
            NotificationDB.is_read.is_(False),
        ).update({NotificationDB.is_read: True}, synchronize_session=False)


def serialize_notification(notification: NotificationDB) -> dict:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "content": notification.content,
        "related_ref": notification.related_ref,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }
