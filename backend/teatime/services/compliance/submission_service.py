"""
Submission Service

Main orchestration service for the daily tea-time lifecycle.
Coordinates the window evaluator, state machine, verifier, fine resolver
and notification emitter.

AUTHORITY MODEL:
- USER-AUTHORIZED: submit, cancel_pending
- VERIFIER: verdict applied by verify_pending
- SYSTEM-AUTHORITATIVE: window open, window close (MISSED + fine)

Every mutation of a (user_id, date) record runs under one keyed lock and
commits before the lock is released, so concurrent requests always see
each other's transitions.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    ActorType, DailySubmissionDB, FineDB, NotificationType, SubmissionState,
)
from ...models.verification import VerificationContext, VerificationRequest, VerificationResult
from .errors import ComplianceError, InProgress, InvalidRequest, InvalidTransition
from .fines import FineResolver
from .locks import KeyedLock, lock_for_update, submission_locks
from .notifications import (
    NotificationEmitter, rejected_message, verified_message, window_open_message,
)
from .scheduler import schedule_window_close
from .state_machine import AutomaticTransitionTriggers, SubmissionStateMachine
from .verification import ProgressCallback, Verifier
from .window import TeaTimeConfig, evaluate, has_window_closed

logger = logging.getLogger(__name__)


SUBMIT_BLOCKED_MESSAGES = {
    SubmissionState.AWAITING_WINDOW: "Tea time hasn't started yet. Come back when the window opens.",
    SubmissionState.VERIFIED: "You've already had your tea verified today.",
    SubmissionState.MISSED: "Today's tea-time window has closed.",
}


@dataclass
class VerificationOutcome:
    submission: DailySubmissionDB
    result: VerificationResult
    # False when the record moved on (cancelled, window closed) while verifying
    applied: bool


class SubmissionService:
    """
    Per-user, per-day submission lifecycle.

    `now` is local device time everywhere; it defaults to datetime.now().
    """

    def __init__(
        self,
        db_session: Session,
        tea_time: TeaTimeConfig = None,
        emitter: NotificationEmitter = None,
        resolver: FineResolver = None,
        locks: KeyedLock = None,
    ):
        self.db = db_session
        self.tea_time = tea_time or TeaTimeConfig()
        self.emitter = emitter or NotificationEmitter(db_session)
        self.resolver = resolver or FineResolver(db_session, self.emitter)
        self.locks = locks or submission_locks
        self.state_machine = SubmissionStateMachine(db_session)

    @contextmanager
    def _transaction(self, user_id: str, day: date):
        """
        Serialize work on one record.

        Domain errors still commit: clock-driven transitions made before the
        error was raised (e.g. MISSED on a late submit) must persist.
        """
        with self.locks.hold((user_id, day)):
            try:
                yield
                self.db.commit()
            except ComplianceError:
                self.db.commit()
                raise
            except Exception:
                self.db.rollback()
                raise

    # =========================================================================
    # RECORD ACCESS
    # =========================================================================

    def _find(self, user_id: str, day: date, for_update: bool = False) -> Optional[DailySubmissionDB]:
        query = self.db.query(DailySubmissionDB).filter(
            DailySubmissionDB.user_id == user_id,
            DailySubmissionDB.date == day,
        )
        if for_update:
            query = lock_for_update(query)
        return query.first()

    def get_or_create_daily(self, user_id: str, day: date) -> DailySubmissionDB:
        """Load the day's record, creating it in AWAITING_WINDOW on first access."""
        submission = self._find(user_id, day, for_update=True)
        if submission is not None:
            return submission

        submission = DailySubmissionDB(
            id=str(uuid4()),
            user_id=user_id,
            date=day,
            state=SubmissionState.AWAITING_WINDOW,
            attempts=0,
        )
        self.db.add(submission)
        try:
            self.db.flush()
        except IntegrityError:
            # Created concurrently by another worker
            self.db.rollback()
            return self._find(user_id, day, for_update=True)

        self.state_machine.log_creation(submission)
        schedule_window_close(self.db, submission, self.tea_time)
        return submission

    # =========================================================================
    # CLOCK SYNC
    # =========================================================================

    def _sync(self, submission: DailySubmissionDB, now: datetime) -> Optional[FineDB]:
        """
        Bring the record in line with the clock.

        Returns a fine if this sync closed the day.
        """
        if self.state_machine.is_terminal_state(submission.state):
            return None

        if has_window_closed(now, submission.date, self.tea_time):
            return self._close(submission, now, trigger="window_closed")

        if submission.date == now.date() and submission.state == SubmissionState.AWAITING_WINDOW:
            if evaluate(now, self.tea_time).window_open:
                success, _ = AutomaticTransitionTriggers.window_opened(self.state_machine, submission)
                if success:
                    self.emitter.emit(
                        submission.user_id,
                        NotificationType.TEA_WINDOW_OPEN,
                        window_open_message(self.tea_time.submission_window_minutes),
                        submission.id,
                    )
        return None

    def _close(self, submission: DailySubmissionDB, now: datetime, trigger: str) -> Optional[FineDB]:
        success, _ = AutomaticTransitionTriggers.window_closed(self.state_machine, submission, trigger)
        if not success:
            return None
        self.db.flush()
        return self.resolver.create_fine(submission.user_id, submission.id, now=now)

    def refresh(self, user_id: str, now: Optional[datetime] = None) -> DailySubmissionDB:
        """Load today's record and apply any clock-driven transitions."""
        now = now or datetime.now()
        day = now.date()
        with self._transaction(user_id, day):
            submission = self.get_or_create_daily(user_id, day)
            self._sync(submission, now)
        return submission

    def status(self, user_id: str, now: Optional[datetime] = None) -> dict:
        """Countdown plus today's record, for display."""
        now = now or datetime.now()
        submission = self.refresh(user_id, now)
        window = evaluate(now, self.tea_time)
        state_config = self.state_machine.get_state_config(submission.state)
        return {
            "now": now.isoformat(),
            "window": window.to_dict(),
            "submission": serialize_submission(submission),
            "state_description": state_config.get("description"),
            "next_states": [s.value for s in self.state_machine.get_next_states(submission.state)],
            "can_submit": submission.state in (SubmissionState.WINDOW_OPEN, SubmissionState.REJECTED),
        }

    # =========================================================================
    # USER ACTIONS
    # =========================================================================

    def submit(
        self,
        user_id: str,
        image_ref: str,
        tea_type: str,
        now: Optional[datetime] = None,
    ) -> DailySubmissionDB:
        """
        Accept a photo for verification.

        Allowed from WINDOW_OPEN or REJECTED while the window is open.
        Raises InProgress while a previous photo is still being verified.
        """
        if not image_ref:
            raise InvalidRequest("Please take a photo of yourself with your tea.")
        if tea_type not in config.TEA_TYPES:
            raise InvalidRequest(f"Unknown tea type. Choose one of: {', '.join(config.TEA_TYPES)}.")

        now = now or datetime.now()
        day = now.date()
        with self._transaction(user_id, day):
            submission = self.get_or_create_daily(user_id, day)
            self._sync(submission, now)

            if submission.state == SubmissionState.PENDING_VERIFICATION:
                raise InProgress()
            if submission.state not in (SubmissionState.WINDOW_OPEN, SubmissionState.REJECTED):
                raise InvalidTransition(SUBMIT_BLOCKED_MESSAGES.get(submission.state))

            self.state_machine.transition(
                submission=submission,
                to_state=SubmissionState.PENDING_VERIFICATION,
                trigger="photo_submitted",
                actor=ActorType.USER,
            )
            submission.image_ref = image_ref
            submission.declared_tea_type = tea_type
            submission.submitted_at = now
            submission.attempts = (submission.attempts or 0) + 1
            submission.last_feedback = None

        return submission

    def cancel_pending(self, user_id: str, now: Optional[datetime] = None) -> DailySubmissionDB:
        """User backs out of a pending verification, e.g. to retake the photo."""
        now = now or datetime.now()
        day = now.date()
        with self._transaction(user_id, day):
            submission = self.get_or_create_daily(user_id, day)
            self._sync(submission, now)

            if submission.state != SubmissionState.PENDING_VERIFICATION:
                raise InvalidTransition("There's no submission waiting for verification.")

            self.state_machine.transition(
                submission=submission,
                to_state=SubmissionState.WINDOW_OPEN,
                trigger="user_cancelled",
                actor=ActorType.USER,
            )
        return submission

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_pending(
        self,
        user_id: str,
        day: date,
        verifier: Verifier,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> VerificationOutcome:
        """
        Run the verifier for the pending photo and apply its verdict.

        The verifier runs outside the lock. The verdict is applied only if the
        same attempt is still pending afterwards. `clock` is read once the
        verdict arrives: a verdict landing after the window closed is
        discarded and the day closes as MISSED. VerificationUnavailable
        propagates and leaves the record PENDING_VERIFICATION.
        """
        with self._transaction(user_id, day):
            submission = self._find(user_id, day, for_update=True)
            if submission is None or submission.state != SubmissionState.PENDING_VERIFICATION:
                raise InvalidTransition("There's no submission waiting for verification.")
            attempt = submission.attempts
            request = VerificationRequest(
                image_ref=submission.image_ref,
                context=VerificationContext.TEA_SUBMISSION,
                tea_type=submission.declared_tea_type,
            )

        result = await verifier.verify(request, on_progress)

        with self._transaction(user_id, day):
            self.db.expire_all()
            submission = self._find(user_id, day, for_update=True)
            if submission.state != SubmissionState.PENDING_VERIFICATION or submission.attempts != attempt:
                logger.info(
                    f"Discarding verdict for submission {submission.id} attempt {attempt}: "
                    f"record is {submission.state.value} (attempt {submission.attempts})"
                )
                return VerificationOutcome(submission, result, applied=False)

            now = clock()
            if has_window_closed(now, day, self.tea_time):
                logger.info(f"Verdict for submission {submission.id} arrived after the window closed")
                self._close(submission, now, trigger="window_closed")
                return VerificationOutcome(submission, result, applied=False)

            submission.last_feedback = result.feedback
            if result.valid:
                self.state_machine.transition(
                    submission=submission,
                    to_state=SubmissionState.VERIFIED,
                    trigger="verification_passed",
                    actor=ActorType.VERIFIER,
                )
                submission.tea_type = submission.declared_tea_type
                self.emitter.emit(user_id, NotificationType.VERIFIED, verified_message(), submission.id)
            else:
                self.state_machine.transition(
                    submission=submission,
                    to_state=SubmissionState.REJECTED,
                    trigger="verification_failed",
                    actor=ActorType.VERIFIER,
                )
                self.emitter.emit(
                    user_id, NotificationType.REJECTED, rejected_message(result.feedback), submission.id
                )

        return VerificationOutcome(submission, result, applied=True)

    # =========================================================================
    # SYSTEM ACTIONS
    # =========================================================================

    def close_window(
        self,
        user_id: str,
        day: date,
        now: Optional[datetime] = None,
        trigger: str = "window_closed",
    ) -> Tuple[DailySubmissionDB, Optional[FineDB]]:
        """
        Close the day's window. Anything short of VERIFIED becomes MISSED with a fine.

        Idempotent: a MISSED day returns its existing fine.
        """
        now = now or datetime.now()
        with self._transaction(user_id, day):
            submission = self.get_or_create_daily(user_id, day)
            if submission.state == SubmissionState.VERIFIED:
                return submission, None
            if submission.state == SubmissionState.MISSED:
                fine = self.resolver.create_fine(user_id, submission.id, now=now)
                return submission, fine
            fine = self._close(submission, now, trigger)
        return submission, fine

    # =========================================================================
    # HISTORY AND STATS
    # =========================================================================

    def history(self, user_id: str, limit: int = 30) -> List[DailySubmissionDB]:
        return self.db.query(DailySubmissionDB).filter(
            DailySubmissionDB.user_id == user_id
        ).order_by(DailySubmissionDB.date.desc()).limit(limit).all()

    def stats(self, user_id: str, now: Optional[datetime] = None) -> dict:
        """Compliance totals for the profile screen, derived from the stored records."""
        today = (now or datetime.now()).date()
        counts = dict(
            self.db.query(DailySubmissionDB.state, func.count(DailySubmissionDB.id))
            .filter(DailySubmissionDB.user_id == user_id)
            .group_by(DailySubmissionDB.state)
            .all()
        )
        verified_days = [
            row[0] for row in self.db.query(DailySubmissionDB.date).filter(
                DailySubmissionDB.user_id == user_id,
                DailySubmissionDB.state == SubmissionState.VERIFIED,
                DailySubmissionDB.date <= today,
            ).order_by(DailySubmissionDB.date.desc()).all()
        ]
        fines = self.resolver.get_user_fines(user_id)
        donations = [d for d in self.resolver.get_user_donations(user_id) if d.verified]

        return {
            "streak_count": verified_streak(verified_days, today),
            "total_teas": counts.get(SubmissionState.VERIFIED, 0),
            "missed_count": counts.get(SubmissionState.MISSED, 0),
            "fine_count": len(fines),
            "total_fines": f"{sum((f.amount for f in fines), Decimal('0')):.2f}",
            "total_donated": f"{sum((d.amount for d in donations), Decimal('0')):.2f}",
        }


def verified_streak(verified_days: List[date], today: date) -> int:
    """
    Consecutive verified days ending today, or yesterday while today is
    still open. `verified_days` must be distinct and newest first.
    """
    expected = today if verified_days and verified_days[0] == today else today - timedelta(days=1)
    streak = 0
    for day in verified_days:
        if day != expected:
            break
        streak += 1
        expected -= timedelta(days=1)
    return streak


def serialize_submission(submission: DailySubmissionDB) -> dict:
    return {
        "id": submission.id,
        "date": submission.date.isoformat(),
        "state": submission.state.value,
        "tea_type": submission.tea_type,
        "image_ref": submission.image_ref,
        "submitted_at": submission.submitted_at.isoformat() if submission.submitted_at else None,
        "attempts": submission.attempts,
        "feedback": submission.last_feedback,
    }
