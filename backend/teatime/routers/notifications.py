"""
Notifications API Routes
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..services.compliance import NotificationEmitter
from ..services.compliance.notifications import serialize_notification

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=dict)
async def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    emitter = NotificationEmitter(db)
    notifications = emitter.list_for_user(current_user, unread_only=unread_only, limit=limit)
    return {
        "unread": emitter.unread_count(current_user),
        "notifications": [serialize_notification(n) for n in notifications],
    }


@router.post("/read-all", response_model=dict)
async def mark_all_read(
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    updated = NotificationEmitter(db).mark_all_read(current_user)
    db.commit()
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=dict)
async def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    notification = NotificationEmitter(db).mark_read(current_user, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    db.commit()
    return serialize_notification(notification)
