"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Window closes and tea-time reminders.
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..models.db_models import ScheduledTransitionDB
from ..services.compliance import WindowScheduler
from ..services.compliance.window import TeaTimeConfig
from .common import get_now, get_tea_time


router = APIRouter(prefix="/internal", tags=["scheduler"])


class ReminderRequest(BaseModel):
    user_ids: List[str]


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/window-close", response_model=dict)
async def run_window_close(
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
    _: bool = Depends(verify_internal_key),
):
    """
    Run due window closes, then sweep records whose task never ran.

    System-automatic - no user confirmation required.
    """
    scheduler = WindowScheduler(db, tea_time=tea_time)
    return {
        "scheduled": scheduler.run_due_transitions(now),
        "sweep": scheduler.sweep_stale_submissions(now),
    }


@router.post("/reminders", response_model=dict)
async def run_reminders(
    body: ReminderRequest,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
    _: bool = Depends(verify_internal_key),
):
    """Send the pre-window reminder to the given users."""
    scheduler = WindowScheduler(db, tea_time=tea_time)
    return scheduler.send_reminders(body.user_ids, now)


@router.get("/scheduled", response_model=dict)
async def get_pending_tasks(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Pending deferred transitions, for monitoring."""
    tasks = db.query(ScheduledTransitionDB).filter(
        ScheduledTransitionDB.status == "pending"
    ).order_by(ScheduledTransitionDB.scheduled_for).all()
    return {
        "count": len(tasks),
        "tasks": [
            {
                "id": t.id,
                "task_type": t.task_type,
                "submission_id": t.submission_id,
                "scheduled_for": t.scheduled_for.isoformat(),
            }
            for t in tasks
        ],
    }
