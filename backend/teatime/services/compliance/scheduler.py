"""
Window Scheduler

AUTHORITY: SYSTEM
Closes tea-time windows at their close timestamp and sends reminders.

Key behaviors:
- One deferred window_close task per daily record, due at the window close
- run_due_transitions() executes due tasks (cron / internal endpoint)
- sweep_stale_submissions() catches records whose task never ran,
  e.g. the process was suspended across the boundary
- send_reminders() emits at most one reminder per user per day
- WindowCloseTimer closes a window in-process without polling

The transition itself always goes through SubmissionService.close_window,
so a late or repeated run is harmless.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    DailySubmissionDB, NotificationType, ScheduledTransitionDB, SubmissionState,
)
from .errors import ComplianceError
from .notifications import reminder_message
from .window import TeaTimeConfig, window_bounds

logger = logging.getLogger(__name__)

WINDOW_CLOSE_TASK = "window_close"

NON_TERMINAL_STATES = [
    SubmissionState.AWAITING_WINDOW,
    SubmissionState.WINDOW_OPEN,
    SubmissionState.PENDING_VERIFICATION,
    SubmissionState.REJECTED,
]


def schedule_window_close(
    db: Session,
    submission: DailySubmissionDB,
    tea_time: TeaTimeConfig,
) -> ScheduledTransitionDB:
    """Schedule the window close for a record. Reuses a pending task if one exists."""
    existing = db.query(ScheduledTransitionDB).filter(
        ScheduledTransitionDB.submission_id == submission.id,
        ScheduledTransitionDB.task_type == WINDOW_CLOSE_TASK,
        ScheduledTransitionDB.status == "pending",
    ).first()
    if existing is not None:
        return existing

    _, close_at = window_bounds(submission.date, tea_time)
    task = ScheduledTransitionDB(
        id=str(uuid4()),
        task_type=WINDOW_CLOSE_TASK,
        submission_id=submission.id,
        scheduled_for=close_at,
        status="pending",
    )
    db.add(task)
    return task


# =============================================================================
# WINDOW SCHEDULER (SYSTEM-AUTHORITATIVE)
# =============================================================================

class WindowScheduler:
    """
    Runs deferred window transitions and reminders.

    AUTHORITY: SYSTEM - Runs automatically, no user intervention required.
    """

    def __init__(self, db_session: Session, tea_time: TeaTimeConfig = None):
        """Initialize with database session."""
        from .submission_service import SubmissionService

        self.db = db_session
        self.tea_time = tea_time or TeaTimeConfig()
        self.service = SubmissionService(db_session, tea_time=self.tea_time)

    def run_due_transitions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Execute every window_close task that is due.

        Each task commits on its own; one failure does not stop the run.
        """
        now = now or datetime.now()
        processed = []
        errors = []

        due_tasks = self.db.query(ScheduledTransitionDB).filter(
            ScheduledTransitionDB.task_type == WINDOW_CLOSE_TASK,
            ScheduledTransitionDB.status == "pending",
            ScheduledTransitionDB.scheduled_for <= now,
        ).order_by(ScheduledTransitionDB.scheduled_for).all()

        for task in due_tasks:
            submission = self.db.get(DailySubmissionDB, task.submission_id)
            try:
                _, fine = self.service.close_window(
                    submission.user_id, submission.date, now=now, trigger="scheduled_window_close"
                )
                task.status = "completed"
                task.executed_at = now
                processed.append({
                    "task_id": task.id,
                    "submission_id": submission.id,
                    "state": submission.state.value,
                    "fine_id": fine.id if fine else None,
                })
            except (ComplianceError, SQLAlchemyError) as e:
                self.db.rollback()
                task.status = "failed"
                task.executed_at = now
                task.error_message = str(e)
                errors.append({"task_id": task.id, "error": str(e)})
                logger.error(f"Window close task {task.id} failed: {e}")
            self.db.commit()

        logger.info(f"Window close run: {len(processed)} processed, {len(errors)} failed")
        return {
            "run_date": now.isoformat(),
            "tasks_processed": len(processed),
            "errors": len(errors),
            "details": {
                "processed": processed,
                "errors": errors,
            },
        }

    def sweep_stale_submissions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Close any non-terminal record whose window has already closed."""
        now = now or datetime.now()
        closed = []
        errors = []

        candidates = self.db.query(DailySubmissionDB).filter(
            DailySubmissionDB.state.in_(NON_TERMINAL_STATES),
            DailySubmissionDB.date <= now.date(),
        ).all()

        for submission in candidates:
            if now < window_bounds(submission.date, self.tea_time)[1]:
                continue
            try:
                _, fine = self.service.close_window(
                    submission.user_id, submission.date, now=now, trigger="stale_sweep"
                )
                closed.append({"submission_id": submission.id, "fine_id": fine.id if fine else None})
            except (ComplianceError, SQLAlchemyError) as e:
                errors.append({"submission_id": submission.id, "error": str(e)})
                logger.error(f"Stale sweep failed for submission {submission.id}: {e}")

        return {
            "run_date": now.isoformat(),
            "closed": len(closed),
            "errors": len(errors),
            "details": {"closed": closed, "errors": errors},
        }

    def send_reminders(self, user_ids: Iterable[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Remind users shortly before the window opens.

        Only inside [start - REMINDER_LEAD_MINUTES, start); once per user per day.
        """
        now = now or datetime.now()
        day = now.date()
        start, _ = window_bounds(day, self.tea_time)
        lead_start = start - timedelta(minutes=config.REMINDER_LEAD_MINUTES)

        if not lead_start <= now < start:
            return {"run_date": now.isoformat(), "reminded": 0, "skipped": "outside_reminder_window"}

        reminded = []
        for user_id in user_ids:
            with self.service.locks.hold((user_id, day)):
                submission = self.service.get_or_create_daily(user_id, day)
                if submission.reminded_at is None:
                    submission.reminded_at = now
                    self.service.emitter.emit(
                        user_id,
                        NotificationType.TEA_TIME_REMINDER,
                        reminder_message(start.strftime("%H:%M")),
                        submission.id,
                    )
                    reminded.append(user_id)
                self.db.commit()

        return {"run_date": now.isoformat(), "reminded": len(reminded), "users": reminded}


# =============================================================================
# IN-PROCESS TIMER
# =============================================================================

class WindowCloseTimer:
    """
    Closes a window at its close timestamp without polling.

    One asyncio task per (user_id, date). Arming an armed key is a no-op.
    The persisted task and the sweep remain the fallback if the process dies.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        tea_time: TeaTimeConfig = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_factory = session_factory
        self.tea_time = tea_time or TeaTimeConfig()
        self.clock = clock
        self._tasks: Dict[Tuple[str, date], asyncio.Task] = {}

    def arm(self, user_id: str, day: date) -> Optional[asyncio.Task]:
        key = (user_id, day)
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return task

        _, close_at = window_bounds(day, self.tea_time)
        delay = (close_at - self.clock()).total_seconds()
        task = asyncio.get_running_loop().create_task(self._fire(user_id, day, max(0.0, delay)))
        self._tasks[key] = task
        task.add_done_callback(lambda _t, k=key: self._tasks.pop(k, None))
        return task

    async def _fire(self, user_id: str, day: date, delay: float) -> None:
        await asyncio.sleep(delay)
        from .submission_service import SubmissionService

        db = self.session_factory()
        try:
            service = SubmissionService(db, tea_time=self.tea_time)
            submission, fine = service.close_window(
                user_id, day, now=self.clock(), trigger="timer_window_close"
            )
            logger.info(
                f"Timer closed window for {user_id} {day}: {submission.state.value}"
                + (f", fine {fine.id}" if fine else "")
            )
        except (ComplianceError, SQLAlchemyError) as e:
            logger.error(f"Timer window close failed for {user_id} {day}: {e}")
        finally:
            db.close()

    def cancel(self, user_id: str, day: date) -> bool:
        task = self._tasks.pop((user_id, day), None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()

    @property
    def armed(self) -> int:
        return len(self._tasks)
